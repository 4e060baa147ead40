"""Multi-provider product data gateway."""

__version__ = "1.0.0"
