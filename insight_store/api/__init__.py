"""
HTTP API for the knowledge store.
"""
