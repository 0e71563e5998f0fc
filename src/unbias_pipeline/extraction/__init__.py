"""Article content extraction chain."""
