"""
Integration tests for the parking occupancy ledger

These run the real repositories against a temporary SQLite database and
cover admission, release, queries, notifications and concurrent access.
"""
