"""Conversation detection, deduplication and feed-card materialization."""
