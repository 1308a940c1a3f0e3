"""
Storage layer for Usage Ledger.

Cost ledgers, their file persistence and the in-memory usage store.
"""
