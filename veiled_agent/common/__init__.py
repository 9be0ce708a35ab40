"""
Shared runtime plumbing: structured logging, env config + contract,
kill switch, backoff and process lifecycle helpers.
"""
