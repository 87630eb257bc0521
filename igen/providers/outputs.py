"""Decoding helpers for inline provider outputs (data URIs, bare base64)."""

from __future__ import annotations

import base64
import binascii
import re

_DATA_URI = re.compile(r"^data:([^;,]+)?;base64,(.+)$", re.DOTALL)


def decode_base64(value: str) -> bytes | None:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def parse_data_uri(uri: str) -> tuple[bytes, str] | None:
    """Parse ``data:image/png;base64,...``. Returns (data, content_type) or None."""
    match = _DATA_URI.match(uri)
    if not match:
        return None
    data = decode_base64(match.group(2).strip())
    if data is None:
        return None
    return data, match.group(1) or "application/octet-stream"
