"""Modules scanned by discovery tests."""
