"""LLM analysis chain."""
