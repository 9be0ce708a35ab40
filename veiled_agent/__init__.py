"""
veiled_agent package

Off-chain agent that watches a price signal and settles privately placed
limit orders (ledger-anchored static orders and session-held trailing orders)
once their trigger condition is met.
"""

__version__ = "0.1.0"
