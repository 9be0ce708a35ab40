"""
Realtime websocket gateway and its wire protocol.
"""
