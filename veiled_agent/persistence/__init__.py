"""
Agent state persistence (ledger cursor + pending orders).
"""
