"""SQLModel storage layer for jobs."""
