"""Payment processor webhook router."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.creem import SIGNATURE_HEADER
from services.errors import ErrorKind, ServiceError
from services.subscription import handle_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/creem")
async def creem_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Creem delivery endpoint. The body is verified exactly as received; any
    non-2xx answer makes Creem retry the delivery.

    Not rate limited: deliveries come from a small pool of processor IPs
    and are gated by the signature check instead.
    """
    raw_body = await request.body()
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ServiceError(ErrorKind.INVALID_PARAMETER, "Webhook payload must be UTF-8") from exc

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.debug("Creem webhook without %s header", SIGNATURE_HEADER)

    return await handle_webhook(payload, signature, db)
