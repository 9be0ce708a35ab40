"""
Trigger evaluation, signature checks and settlement dispatch.
"""
