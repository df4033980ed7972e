"""Relational storage for rooms, messages and feed cards."""
