"""Small shared helpers."""

from .slug import abbreviate_slug, slugify

__all__ = ["abbreviate_slug", "slugify"]
