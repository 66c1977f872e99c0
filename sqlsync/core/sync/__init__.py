"""Synchronization engine: hashing, schema tracking, diffing, dispatch, scheduling."""
