"""Scrub credentials out of provider traffic before it is logged.

Keys are compared after normalisation (case and ``_``/``-`` removed), so
``refresh_token``, ``refreshToken`` and ``Refresh-Token`` all match. OAuth
query parameters embedded in URLs are scrubbed as well.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Set
from typing import Any

from pydantic import BaseModel, SecretStr

REDACTED = "<redacted>"

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "accesstoken",
        "refreshtoken",
        "idtoken",
        "token",
        "clientsecret",
        "code",
        "authorization",
        "cookie",
        "setcookie",
        "password",
        "vin",
    }
)

_QUERY_SECRET = re.compile(r"([?&](?:code|access_token|refresh_token|client_secret)=)[^&#\s]+", re.IGNORECASE)
_BEARER = re.compile(r"\b(Bearer|Basic)\s+\S+", re.IGNORECASE)

_MAX_DEPTH = 20


def _normalise_key(key: object) -> str:
    return str(key).lower().replace("_", "").replace("-", "")


def is_secret_key(key: object) -> bool:
    return _normalise_key(key) in _SECRET_KEYS


def scrub_text(text: str) -> str:
    """Mask OAuth query parameters and ``Authorization`` schemes inside free text."""
    text = _QUERY_SECRET.sub(rf"\1{REDACTED}", text)
    return _BEARER.sub(rf"\1 {REDACTED}", text)


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a copy of *value* that is safe to hand to a DEBUG log."""
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, SecretStr):
        return REDACTED
    if isinstance(value, str):
        text = scrub_text(value)
        return f"{text[:max_string]}…<truncated>" if len(text) > max_string else text
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")

    def _child(item: Any) -> Any:
        return redact_for_log(item, max_string=max_string, _depth=_depth + 1)

    if isinstance(value, Mapping):
        return {str(k): REDACTED if is_secret_key(k) else _child(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, Set)):
        return [_child(item) for item in value]
    return repr(value)
