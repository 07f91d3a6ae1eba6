from __future__ import annotations
import logging
from typing import Any, Optional

import httpx

from errors import UpstreamError
from schemas import CustomerRecord
from settings import Settings

logger = logging.getLogger(__name__)


def _table_url(settings: Settings, table: str) -> str:
    if not settings.AIRTABLE_BASE_ID or not settings.AIRTABLE_API_KEY:
        raise UpstreamError("airtable", "AIRTABLE_BASE_ID and AIRTABLE_API_KEY must be configured")
    return f"{settings.AIRTABLE_API_URL.rstrip('/')}/{settings.AIRTABLE_BASE_ID}/{table}"


def _headers(settings: Settings) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {settings.AIRTABLE_API_KEY}",
        "Content-Type": "application/json",
    }


def email_formula(email: str) -> str:
    escaped = email.replace("\\", "\\\\").replace('"', '\\"')
    return f'{{email}}="{escaped}"'


async def _get_page(
    client: httpx.AsyncClient, settings: Settings, url: str, params: dict[str, Any]
) -> dict[str, Any]:
    try:
        response = await client.get(url, params=params, headers=_headers(settings))
    except httpx.HTTPError as exc:
        raise UpstreamError("airtable", f"request failed: {exc}") from exc
    if response.status_code >= 400:
        raise UpstreamError("airtable", f"status {response.status_code}: {response.text[:200]}")
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamError("airtable", "response is not valid JSON") from exc


async def get_documents(
    client: httpx.AsyncClient,
    settings: Settings,
    table: str,
    formula: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[dict[str, Any]]:
    """List records of ``table``, following Airtable's ``offset`` cursor until ``limit`` or the end."""
    url = _table_url(settings, table)
    params: dict[str, Any] = {}
    if limit is not None:
        params["maxRecords"] = limit
    if formula:
        params["filterByFormula"] = formula
    records: list[dict[str, Any]] = []
    while True:
        data = await _get_page(client, settings, url, params)
        records.extend(data.get("records") or [])
        offset = data.get("offset")
        if not offset or (limit is not None and len(records) >= limit):
            return records[:limit]
        params["offset"] = offset


async def find_customer_by_email(
    client: httpx.AsyncClient, settings: Settings, email: str
) -> Optional[CustomerRecord]:
    records = await get_documents(
        client, settings, settings.AIRTABLE_CUSTOMER_TABLE, formula=email_formula(email), limit=1
    )
    if not records:
        return None
    customer = CustomerRecord.from_airtable(records[0])
    logger.debug("Found customer %s (tier %s)", customer.id, customer.customer_tier)
    return customer
