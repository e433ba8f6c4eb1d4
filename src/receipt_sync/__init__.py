"""
Receipt capture → Local queue → Object storage upload → Server review sync

An offline-first sync engine that delivers locally captured receipts to the
remote receipt service once connectivity allows, and reconciles the server's
review outcome back into local state.
"""

__version__ = "0.1.0"
