"""Streaming synchronization engine: buffering, parsing, tree state, history."""
