"""
Static order discovery: ledger events, blob storage, decryption.
"""
