"""Status publishing and realtime fan-out."""
