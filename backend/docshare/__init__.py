"""Document processing pipeline and audience synthesis engine."""

__version__ = "0.1.0"
