"""
tradeledger - trade-lifecycle aggregation and balance reconciliation engine.
"""

__version__ = "0.1.0"
