"""Unit tests: domain rules, settings, messaging and commands in isolation"""
