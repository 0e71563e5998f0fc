"""Redis-backed job queue."""
