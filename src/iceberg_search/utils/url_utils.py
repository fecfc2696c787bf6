"""URL normalisation helpers."""

from __future__ import annotations

import re

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_WWW_RE = re.compile(r"^www\.", re.IGNORECASE)


def normalize_url(url: str) -> str:
    """Return the deduplication key for *url*.

    Strips the http(s) scheme, a leading ``www.`` and trailing slashes, then
    lowercases, so ``https://Example.com/x/`` and ``example.com/x`` collide.

    Args:
        url: Raw URL string.

    Returns:
        Normalised key; never raises.
    """
    normalised = url.strip()
    normalised = _SCHEME_RE.sub("", normalised)
    normalised = _WWW_RE.sub("", normalised)
    normalised = normalised.rstrip("/")
    return normalised.lower()
