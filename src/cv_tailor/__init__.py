"""Queue-backed CV tailoring pipeline."""

__version__ = "0.1.0"
