"""
Historize: Transactional change capture for relational tables.

Every mutation of a tracked table appends a snapshot row to its history
table, in the same transaction as the mutation itself.
"""

__version__ = "0.1.0"
