"""
Bank Ledger

Account balances and an immutable movement journal, mutated atomically under
transfer caps, daily caps and a bounded deposit-reversal window. Monetary
values are always Decimal.
"""

__version__ = "1.0.0"
