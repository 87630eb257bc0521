"""Signed callback URLs for provider webhooks.

Each callback URL carries the generation id and an HMAC-SHA256 token over it,
keyed by ``IGEN_WEBHOOK_SECRET``. The receiver recomputes the token before
touching any state.
"""

from __future__ import annotations

import hashlib
import hmac
from urllib.parse import urlencode


def callback_token(secret: str, generation_id: str) -> str:
    return hmac.new(secret.encode("utf-8"), generation_id.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_token(secret: str | None, generation_id: str | None, token: str | None) -> bool:
    """True when the token matches. With no secret configured every caller is accepted."""
    if not secret:
        return True
    if not generation_id or not token:
        return False
    return hmac.compare_digest(callback_token(secret, generation_id), token)


def callback_url(public_url: str, provider: str, generation_id: str, secret: str | None) -> str:
    params = {"generation_id": generation_id}
    if secret:
        params["token"] = callback_token(secret, generation_id)
    return f"{public_url.rstrip('/')}/webhooks/{provider}?{urlencode(params)}"
