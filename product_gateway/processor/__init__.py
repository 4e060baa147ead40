"""Product data normalization."""

from .normalizer import PRODUCT_FIELDS, normalize_batch, normalize_product

__all__ = ["PRODUCT_FIELDS", "normalize_batch", "normalize_product"]
