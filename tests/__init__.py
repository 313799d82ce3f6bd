"""Tests for the parking occupancy ledger"""
