"""
Order records and the in-memory order registry.
"""
