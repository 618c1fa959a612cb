"""Incremental friend achievement feed cache."""
