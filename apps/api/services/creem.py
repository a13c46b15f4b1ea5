"""Creem payment processor client: checkout sessions and webhook signatures."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

from config import require_creem_api_key, settings


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "creem-signature"


class CreemError(RuntimeError):
    """Raised when the Creem API cannot be reached or answers unexpectedly."""


def compute_signature(payload: str, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact raw payload."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(payload: str, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip())


class CreemClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or settings.CREEM_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.CREEM_TIMEOUT_SECONDS
        self._transport = transport

    async def create_checkout(
        self,
        *,
        product_id: str,
        customer_email: str,
        success_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "product_id": product_id,
            "customer": {"email": customer_email},
            "success_url": success_url,
        }
        if metadata:
            body["metadata"] = metadata

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    "/v1/checkouts",
                    json=body,
                    headers={"x-api-key": self.api_key},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Creem checkout rejected product=%s status=%s",
                product_id,
                exc.response.status_code,
            )
            raise CreemError(f"Creem rejected checkout creation ({exc.response.status_code}).") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Creem checkout request failed product=%s: %s", product_id, exc)
            raise CreemError("Creem checkout request failed.") from exc

        if not isinstance(data, dict) or not data.get("checkout_url"):
            raise CreemError("Creem response did not include a checkout_url.")
        return data


def get_creem_client() -> CreemClient:
    """Build a client from settings; raises ValueError when no API key is configured."""
    return CreemClient(api_key=require_creem_api_key())
