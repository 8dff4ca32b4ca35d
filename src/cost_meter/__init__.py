"""
Meeting Cost Meter

Shared, server-anchored meeting timer and cost ledger.
Every client derives elapsed time and cost from one session record.
"""

__version__ = "0.1.0"
