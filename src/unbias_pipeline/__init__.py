"""Queue-backed article extraction and bias analysis pipeline."""

__version__ = "0.1.0"
