"""Mock catalogue API servers for testing."""

from .app import build_catalogue, create_catalogue_a, create_catalogue_b, create_mock_app, make_asin

__all__ = ["build_catalogue", "create_catalogue_a", "create_catalogue_b", "create_mock_app", "make_asin"]
