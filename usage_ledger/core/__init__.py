"""
Core modules for Usage Ledger.

This package contains budget periods and access policy evaluation.
"""
