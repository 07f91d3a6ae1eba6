"""
Form intake pipeline shared by the contact form and the newsletter signup.

Every request runs the same steps: parse -> validate and sanitize (the form
model) -> lookup -> enrich -> forward -> optional side effects -> respond. A
flow only supplies its form model and the flow-specific lookup/enrich/respond
steps.
"""
from __future__ import annotations
import json
import logging
import re
import secrets
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Type

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from database import find_customer_by_email
from errors import ConflictError, UpstreamError, ValidationError
from schemas import (
    NAME_MAX_LENGTH,
    ContactForm,
    ContactSubmission,
    CustomerRecord,
    EmailPreferences,
    FormModel,
    NewsletterForm,
    NewsletterSignup,
    WelcomeEmailTrigger,
    sanitize_text,
)
from settings import Settings
from workflows import SideEffectResult, post_event, trigger_best_effort

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

DERIVED_NAME_MAX_LENGTH = 50
DEFAULT_GREETING_NAME = "Liebe Kundin"

PRIVILEGED_TIERS = ("VIP", "Gold")
LOYALTY_ORDER_THRESHOLD = 5

SUBJECT_LABELS = {
    "styling": "Styling-Beratung",
    "order": "Bestellanfrage",
    "return": "Rückgabe/Umtausch",
    "vip": "VIP-Programm",
    "other": "Sonstiges",
}

_BASE36 = string.digits + string.ascii_lowercase


def parse_body(body: bytes | str | None) -> dict[str, Any]:
    if not body:
        raise ValidationError(["Anfrage enthält keine Daten"])
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError(["Anfrage ist kein gültiges JSON"])
    if not isinstance(data, dict):
        raise ValidationError(["Anfrage muss ein JSON-Objekt sein"])
    return data


def parse_form(form: Type[FormModel], data: Mapping[str, Any]) -> FormModel:
    try:
        return form.model_validate(data)
    except SchemaError as exc:
        raise ValidationError.from_schema(exc, form.messages) from exc


# ---------- Enrichment helpers ----------

def utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_base36(number: int) -> str:
    digits = []
    while True:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
        if not number:
            return "".join(reversed(digits))


def random_token(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_ticket_id(prefix: str = "DFP") -> str:
    stamp = to_base36(time.time_ns() // 1_000_000)
    return f"{prefix}-{stamp}-{random_token(5)}".upper()


def generate_welcome_code(prefix: str = "WELCOME", discount: int = 15) -> str:
    stamp = to_base36(time.time_ns() // 1_000_000)
    return f"{prefix}{discount}-{stamp}{random_token(4)}".upper()


def derive_name_from_email(email: str) -> str:
    local_part = email.split("@", 1)[0]
    words = re.sub(r"\d+", "", re.sub(r"[._-]", " ", local_part)).split()
    name = " ".join(word[:1].upper() + word[1:] for word in words)[:DERIVED_NAME_MAX_LENGTH].strip()
    return name or DEFAULT_GREETING_NAME


def request_metadata(headers: Mapping[str, str]) -> dict[str, str]:
    """Best-effort client metadata; header names are matched case-insensitively."""
    lowered = {k.lower(): v for k, v in headers.items()}
    return {
        "ip_address": lowered.get("x-forwarded-for") or lowered.get("client-ip") or UNKNOWN,
        "user_agent": lowered.get("user-agent") or UNKNOWN,
        "language": lowered.get("accept-language") or UNKNOWN,
        "referrer": lowered.get("referer") or "direct",
    }


def email_preferences(customer_tier: str, total_orders: int) -> EmailPreferences:
    prefs = EmailPreferences()
    if customer_tier in PRIVILEGED_TIERS:
        prefs.vip_offers = True
        prefs.early_access = True
    if total_orders > LOYALTY_ORDER_THRESHOLD:
        prefs.loyalty_rewards = True
    return prefs


# ---------- Pipeline ----------

@dataclass
class IntakeResult:
    body: dict[str, Any]
    record: BaseModel
    side_effects: List[SideEffectResult] = field(default_factory=list)


class IntakeFlow(ABC):
    form: Type[FormModel]
    label = "intake"

    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings

    @property
    @abstractmethod
    def endpoint(self) -> str:
        """n8n webhook path the enriched record is posted to."""

    async def lookup(self, form: Any) -> Optional[CustomerRecord]:
        return await find_customer_by_email(self.client, self.settings, form.email)

    @abstractmethod
    def enrich(self, form: Any, meta: dict[str, str], customer: Optional[CustomerRecord]) -> BaseModel:
        ...

    async def side_effects(self, record: Any) -> List[SideEffectResult]:
        return []

    @abstractmethod
    def respond(self, record: Any, forwarded: dict[str, Any]) -> dict[str, Any]:
        ...

    async def handle(self, body: bytes | str | None, headers: Mapping[str, str]) -> IntakeResult:
        try:
            form = parse_form(self.form, parse_body(body))
        except ValidationError as exc:
            logger.info("%s submission rejected (%s): %s", self.label, exc.error_type, exc.details)
            raise
        customer = await self.lookup(form)
        record = self.enrich(form, request_metadata(headers), customer)
        forwarded = await post_event(self.client, self.settings, self.endpoint, record.to_payload())
        effects = await self.side_effects(record)
        return IntakeResult(body=self.respond(record, forwarded), record=record, side_effects=effects)


class ContactFlow(IntakeFlow):
    form = ContactForm
    label = "contact"

    @property
    def endpoint(self) -> str:
        return self.settings.N8N_CONTACT_ENDPOINT

    async def lookup(self, form: ContactForm) -> Optional[CustomerRecord]:
        # Lookup failure is tolerated; the ticket is forwarded without a customer link.
        try:
            return await super().lookup(form)
        except UpstreamError as exc:
            logger.warning("Could not check customer status: %s", exc)
            return None

    def enrich(
        self, form: ContactForm, meta: dict[str, str], customer: Optional[CustomerRecord]
    ) -> ContactSubmission:
        return ContactSubmission(
            **form.model_dump(),
            timestamp=utc_timestamp(),
            ip_address=meta["ip_address"],
            user_agent=meta["user_agent"],
            language=meta["language"],
            subject_display=SUBJECT_LABELS.get(form.subject, form.subject),
            ticket_id=generate_ticket_id(self.settings.TICKET_PREFIX),
            is_existing_customer=customer is not None,
            customer_id=customer.id if customer else None,
            customer_tier=customer.customer_tier if customer else None,
            admin_email=self.settings.ADMIN_EMAIL,
            support_email=self.settings.SUPPORT_EMAIL,
        )

    def respond(self, record: ContactSubmission, forwarded: dict[str, Any]) -> dict[str, Any]:
        logger.info("Contact submission forwarded, ticket %s", record.ticket_id)
        return {
            "success": True,
            "message": "Nachricht erfolgreich gesendet",
            "ticketId": record.ticket_id,
        }


class NewsletterFlow(IntakeFlow):
    form = NewsletterForm
    label = "newsletter"

    @property
    def endpoint(self) -> str:
        return self.settings.N8N_NEWSLETTER_ENDPOINT

    async def lookup(self, form: NewsletterForm) -> Optional[CustomerRecord]:
        customer = await super().lookup(form)
        if customer is not None and customer.newsletter_subscribed:
            logger.info("Newsletter signup for already subscribed customer %s", customer.id)
            raise ConflictError("Diese E-Mail-Adresse ist bereits für den Newsletter angemeldet.")
        return customer

    def enrich(
        self, form: NewsletterForm, meta: dict[str, str], customer: Optional[CustomerRecord]
    ) -> NewsletterSignup:
        name = form.name or sanitize_text(derive_name_from_email(form.email), NAME_MAX_LENGTH)
        tier = customer.customer_tier if customer else "Neu"
        total_orders = customer.total_orders if customer else 0
        return NewsletterSignup(
            email=form.email,
            name=name,
            timestamp=utc_timestamp(),
            source=form.source or "website_newsletter",
            welcome_code=generate_welcome_code(self.settings.WELCOME_CODE_PREFIX, self.settings.WELCOME_DISCOUNT),
            existing_customer=customer is not None,
            customer_id=customer.id if customer else None,
            customer_tier=tier,
            total_spent=customer.total_spent if customer else 0,
            total_orders=total_orders,
            email_preferences=email_preferences(tier, total_orders),
            **meta,
        )

    async def side_effects(self, record: NewsletterSignup) -> List[SideEffectResult]:
        if self.settings.DOUBLE_OPT_IN:
            return []
        trigger = WelcomeEmailTrigger(
            customer_email=record.email,
            customer_name=record.name,
            welcome_code=record.welcome_code,
            discount_amount=self.settings.WELCOME_DISCOUNT,
            customer_tier=record.customer_tier,
            timestamp=record.timestamp,
        )
        result = await trigger_best_effort(
            self.client, self.settings, self.settings.N8N_EMAIL_AUTOMATION_ENDPOINT, trigger.model_dump()
        )
        return [result]

    def respond(self, record: NewsletterSignup, forwarded: dict[str, Any]) -> dict[str, Any]:
        double_opt_in = self.settings.DOUBLE_OPT_IN
        logger.info("Newsletter signup forwarded for %s", record.email)
        return {
            "success": True,
            "message": (
                "Bestätigungs-E-Mail wurde gesendet. Bitte überprüfen Sie Ihr Postfach."
                if double_opt_in
                else "Erfolgreich für Newsletter angemeldet!"
            ),
            "welcomeDiscount": self.settings.WELCOME_DISCOUNT,
            "welcomeCode": record.welcome_code,
            "doubleOptIn": double_opt_in,
        }


async def handle_contact(
    body: bytes | str | None, headers: Mapping[str, str], client: httpx.AsyncClient, settings: Settings
) -> IntakeResult:
    return await ContactFlow(client, settings).handle(body, headers)


async def handle_newsletter(
    body: bytes | str | None, headers: Mapping[str, str], client: httpx.AsyncClient, settings: Settings
) -> IntakeResult:
    return await NewsletterFlow(client, settings).handle(body, headers)
