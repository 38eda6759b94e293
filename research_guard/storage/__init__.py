"""
Usage ledger storage: event models and the SQLite repository.
"""
