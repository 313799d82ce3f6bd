"""
Parking Ledger

Occupancy ledger for parking facilities: admits vehicles, enforces one
active stay per plate and per-facility capacity, bills exits and keeps an
append-only history.
"""

__version__ = "1.0.0"
