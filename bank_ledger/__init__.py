"""
Bank Ledger

A transactional banking ledger with current and saving accounts, an
append-only operation log, atomic transfers and Decimal money throughout.
"""

__version__ = "1.0.0"
