"""Deterministic cache key construction."""

import hashlib
import json
import re
import unicodedata
from typing import Any, Dict, Optional


_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """
    Convert free text to a URL-safe slug.

    Accents are stripped, everything that is not a lowercase letter or digit
    becomes a single hyphen, and leading/trailing hyphens are removed.

    Examples:
        >>> slugify("  Wireless Headphones (Pro) ")
        'wireless-headphones-pro'
        >>> slugify("Café Crème")
        'cafe-creme'
    """
    normalized = unicodedata.normalize("NFKD", str(text))
    ascii_text = normalized.encode("ascii", "ignore").decode("ascii")
    return _NON_SLUG.sub("-", ascii_text.lower()).strip("-")


def params_hash(params: Dict[str, Any]) -> str:
    """MD5 of the canonical JSON form of ``params`` (sorted keys, compact)."""
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


def generate_key(cache_type: str, params: Dict[str, Any], provider: Optional[str] = None) -> str:
    """
    Build the cache key for a request.

    Components, joined with ``_``: the type, the provider (if any), the
    marketplace (if given), the primary identifier for the type (``asin`` for
    ``product``, slugified ``keyword`` for ``search``), then a hash of the
    remaining parameters. ``None`` and empty-string values are ignored so
    they never influence the key.

    Args:
        cache_type: Request type, e.g. ``"product"`` or ``"search"``
        params: Request parameters
        provider: Optional provider key

    Returns:
        Cache key string
    """
    remaining = {
        name: params[name]
        for name in sorted(params)
        if params[name] is not None and params[name] != ""
    }

    components = [cache_type]
    if provider:
        components.append(provider)

    if "marketplace" in remaining:
        components.append(str(remaining.pop("marketplace")))

    if cache_type == "product" and "asin" in remaining:
        components.append(str(remaining.pop("asin")))
    elif cache_type == "search" and "keyword" in remaining:
        components.append(slugify(remaining.pop("keyword")))

    if remaining:
        components.append(params_hash(remaining))

    return "_".join(components)
