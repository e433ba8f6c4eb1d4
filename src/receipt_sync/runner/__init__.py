"""
CLI runner module.

Provides commands:
- init-config: Write a default config file
- import: Queue files as a new receipt
- sync: Upload queued receipts, poll review status, clean up
- retry: Requeue failed receipts and upload them
- status: Show receipt statistics
- cleanup: Apply the retention window
- fetch-remote: Mirror an account's receipts from the server
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
