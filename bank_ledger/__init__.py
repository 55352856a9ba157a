"""
Bank Ledger

Account and loan ledgers with the transfer rules that keep a loan's
outstanding principal and its linked account balance consistent, using
Decimal money, per-entity locking and a hash-chained audit trail.
"""

__version__ = "1.0.0"
