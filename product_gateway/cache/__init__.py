"""Response caching."""

from .api_cache import ApiCache, TagRegistry
from .keys import generate_key, slugify

__all__ = ["ApiCache", "TagRegistry", "generate_key", "slugify"]
