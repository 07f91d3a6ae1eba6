from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from errors import UpstreamError
from settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SideEffectResult:
    """Outcome of a best-effort call. Never raised, only reported."""

    name: str
    ok: bool
    error: Optional[str] = None


def webhook_url(settings: Settings, endpoint: str) -> str:
    if not settings.N8N_WEBHOOK_URL:
        raise UpstreamError("n8n", "N8N_WEBHOOK_URL is not configured")
    return f"{settings.N8N_WEBHOOK_URL.rstrip('/')}{endpoint}"


async def post_event(
    client: httpx.AsyncClient, settings: Settings, endpoint: str, payload: dict[str, Any]
) -> dict[str, Any]:
    """POST one event to an n8n webhook; any failure becomes an UpstreamError."""
    url = webhook_url(settings, endpoint)
    try:
        response = await client.post(url, json=payload)
    except httpx.HTTPError as exc:
        raise UpstreamError("n8n", f"{endpoint} request failed: {exc}") from exc
    if not response.is_success:
        raise UpstreamError("n8n", f"{endpoint} failed with status {response.status_code}: {response.text[:200]}")
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError as exc:
        raise UpstreamError("n8n", f"{endpoint} returned invalid JSON") from exc
    return data if isinstance(data, dict) else {"result": data}


async def trigger_best_effort(
    client: httpx.AsyncClient, settings: Settings, endpoint: str, payload: dict[str, Any]
) -> SideEffectResult:
    try:
        await post_event(client, settings, endpoint, payload)
    except UpstreamError as exc:
        logger.warning("Best-effort call to %s failed: %s", endpoint, exc)
        return SideEffectResult(name=endpoint, ok=False, error=str(exc))
    return SideEffectResult(name=endpoint, ok=True)
