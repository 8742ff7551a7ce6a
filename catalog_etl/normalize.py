"""Text helpers for category slugs and retailer URLs."""
from __future__ import annotations

import re
import unicodedata

_ORIGIN_RE = re.compile(r"^https?://[^/]+", re.IGNORECASE)
_DISALLOWED_RE = re.compile(r"[^a-z0-9 -]")
_SPACES_RE = re.compile(r"\s+")
_DASHES_RE = re.compile(r"-+")


def strip_origin(url: str) -> str:
    """Drop scheme and host, keeping the path. Relative URLs pass through."""
    return _ORIGIN_RE.sub("", url or "")


def slugify(text: str) -> str:
    """Lowercase ASCII slug shared by every retailer.

    Accents are removed and any other character outside ``[a-z0-9 -]``
    (path slashes and underscores included) is deleted; spaces become dashes.

    >>> slugify("/Almacén/Desayuno y Merienda/")
    'almacendesayuno-y-merienda'
    """
    value = unicodedata.normalize("NFD", str(text or "").lower().strip())
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    value = _DISALLOWED_RE.sub("", value)
    value = _SPACES_RE.sub("-", value)
    return _DASHES_RE.sub("-", value)


def category_slug(url: str, name: str, external_id: str) -> str:
    """Slug derived from the category path, falling back to name and id."""
    slug = slugify(strip_origin(url))
    if slug:
        return slug
    return f"{slugify(name)}-{external_id}"


def join_id_path(parent_path: str, external_id: str) -> str:
    return f"{parent_path}/{external_id}" if parent_path else str(external_id)
