from __future__ import annotations
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import stripe
from pydantic import ValidationError as SchemaError

from errors import UpstreamError, ValidationError
from schemas import CatalogProduct, SyncedProduct, SyncResult
from settings import Settings

logger = logging.getLogger(__name__)


def to_minor_units(price: Decimal) -> int:
    return int((price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _metadata(**values: Optional[str]) -> Dict[str, str]:
    return {key: value for key, value in values.items() if value is not None}


class StripeCatalog:
    """Creates Stripe products and prices for catalog records."""

    def __init__(self, settings: Settings) -> None:
        if not settings.STRIPE_SECRET_KEY:
            raise UpstreamError("stripe", "STRIPE_SECRET_KEY is not configured")
        self.client = stripe.StripeClient(settings.STRIPE_SECRET_KEY)
        self.currency = settings.STRIPE_CURRENCY

    async def create_product(self, product: CatalogProduct) -> stripe.Product:
        params: Dict[str, Any] = {
            "name": product.name,
            "metadata": _metadata(airtable_id=product.airtable_id, category=product.category, sku=product.sku),
        }
        if product.description:
            params["description"] = product.description
        if product.image_url:
            params["images"] = [product.image_url]
        return await self.client.products.create_async(params=params)

    async def create_price(self, product: CatalogProduct, stripe_product_id: str) -> stripe.Price:
        params: Dict[str, Any] = {
            "unit_amount": to_minor_units(product.price),
            "currency": self.currency,
            "product": stripe_product_id,
            "metadata": _metadata(airtable_id=product.airtable_id),
        }
        return await self.client.prices.create_async(params=params)


def parse_sync_request(payload: Any) -> List[Any]:
    if not isinstance(payload, dict) or not isinstance(payload.get("products"), list):
        raise ValidationError(["'products' muss eine Liste sein"])
    return payload["products"]


async def sync_products(catalog: StripeCatalog, records: List[Any]) -> SyncResult:
    """Create a Stripe product and price per record, in order.

    A failing record is logged and skipped; it never aborts the batch and is
    not rolled back.
    """
    synced: List[SyncedProduct] = []
    for index, raw in enumerate(records):
        try:
            product = CatalogProduct.model_validate(raw)
        except SchemaError as exc:
            logger.error("Skipping catalog record #%d: invalid data (%s)", index, exc.error_count())
            continue
        try:
            stripe_product = await catalog.create_product(product)
            stripe_price = await catalog.create_price(product, stripe_product.id)
        except stripe.StripeError as exc:
            logger.error("Error syncing product %s: %s", product.name, exc)
            continue
        synced.append(
            SyncedProduct(
                airtable_id=product.airtable_id,
                stripe_product_id=stripe_product.id,
                stripe_price_id=stripe_price.id,
                name=product.name,
                price=float(product.price),
            )
        )
    result = SyncResult(
        message=f"{len(synced)} von {len(records)} Produkten synchronisiert",
        synced_count=len(synced),
        total_count=len(records),
        failed_count=len(records) - len(synced),
        products=synced,
    )
    logger.info("Stripe sync finished: %s", result.message)
    return result
