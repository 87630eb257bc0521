"""Provider webhook receiver.

POST /webhooks/{provider}?generation_id=...&token=...

Deliveries are idempotent: duplicates and unknown request ids are acknowledged
with 200 so the provider stops retrying. Only storage failures return 5xx.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from igen.config import Settings, get_settings
from igen.reconciler import CompletionReconciler
from igen.services import get_reconciler
from igen.webhooks import verify_token

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    generation_id: str | None = None,
    token: str | None = None,
    settings: Settings = Depends(get_settings),
    reconciler: CompletionReconciler = Depends(get_reconciler),
):
    if not verify_token(settings.igen_webhook_secret, generation_id, token):
        logger.warning("webhook_bad_token provider=%s generation_id=%s", provider, generation_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")
    body = await request.body()
    result = await run_in_threadpool(reconciler.handle_webhook, provider, body, generation_id)
    return {"ok": True, "result": result.value}
