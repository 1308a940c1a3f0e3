"""
Usage Ledger.

Per-user usage tracking and budget enforcement for metered model APIs.
"""
