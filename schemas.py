from __future__ import annotations
import html
import re
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

# DressForPleasure Schemas

Category = Literal["oberteile", "kleider", "handtaschen", "schmuck", "accessoires"]
Subject = Literal["styling", "order", "return", "vip", "other"]


class CamelModel(BaseModel):
    """Serialized with camelCase keys, the shape the browser and n8n workflows use."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------- Catalog & Cart ----------

class Product(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: Category
    price: Decimal = Field(ge=0)
    image: Optional[str] = None
    description: str = ""
    featured: bool = False
    in_stock: bool = True


class CartItem(CamelModel):
    id: str
    name: str
    category: Category
    price: Decimal = Field(ge=0)
    image: Optional[str] = None
    quantity: int = Field(ge=1, default=1)

    @classmethod
    def from_product(cls, product: Product, quantity: int = 1) -> "CartItem":
        return cls(
            id=product.id,
            name=product.name,
            category=product.category,
            price=product.price,
            image=product.image,
            quantity=quantity,
        )

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class CartSnapshot(CamelModel):
    items: List[CartItem] = Field(default_factory=list)
    total: Decimal = Decimal("0")
    count: int = 0


# ---------- Customers (Airtable, read-only) ----------

class CustomerRecord(BaseModel):
    id: str
    email: Optional[str] = None
    newsletter_subscribed: bool = False
    customer_tier: str = "Neu"
    total_spent: float = 0
    total_orders: int = 0

    @classmethod
    def from_airtable(cls, record: dict) -> "CustomerRecord":
        fields = record.get("fields") or {}
        return cls(
            id=record["id"],
            email=fields.get("email"),
            newsletter_subscribed=bool(fields.get("newsletter_subscribed", False)),
            customer_tier=fields.get("customer_tier") or "Neu",
            total_spent=fields.get("total_spent") or 0,
            total_orders=fields.get("total_orders") or 0,
        )


# ---------- Forms ----------

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
EMAIL_MESSAGE = "Gültige E-Mail-Adresse ist erforderlich"
MESSAGE_MAX_LENGTH = 1000
NAME_MAX_LENGTH = 100


def sanitize_text(value: str, max_length: Optional[int] = None) -> str:
    # html.escape covers < > " ' &
    escaped = html.escape(value.strip(), quote=True)
    return escaped[:max_length] if max_length else escaped


def _escaped(max_length: int) -> AfterValidator:
    return AfterValidator(lambda value: sanitize_text(value, max_length))


def _check_email(value: str) -> str:
    if not EMAIL_RE.match(value):
        raise PydanticCustomError("email_invalid", EMAIL_MESSAGE)
    return value


Email = Annotated[str, AfterValidator(_check_email)]
Name = Annotated[str, Field(min_length=2), _escaped(NAME_MAX_LENGTH)]


class FormModel(BaseModel):
    """Browser form body. ``messages`` maps ``field`` or ``field:error_type`` to the text shown to the user."""

    model_config = ConfigDict(str_strip_whitespace=True)

    messages: ClassVar[Dict[str, str]] = {}


# ---------- Contact ----------

class ContactForm(FormModel):
    messages: ClassVar[Dict[str, str]] = {
        "name": "Name ist erforderlich (mindestens 2 Zeichen)",
        "email": EMAIL_MESSAGE,
        "message": "Nachricht ist erforderlich (mindestens 10 Zeichen)",
        "subject": "Betreff ist erforderlich",
        "subject:literal_error": "Ungültiger Betreff",
    }

    name: Name
    email: Email
    message: Annotated[str, Field(min_length=10), _escaped(MESSAGE_MAX_LENGTH)]
    subject: Subject


class ContactSubmission(CamelModel):
    name: str
    email: str
    subject: Subject
    message: str
    timestamp: str
    source: str = "website_contact_form"
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    language: str = "unknown"
    subject_display: str
    ticket_id: str
    is_existing_customer: bool = False
    customer_id: Optional[str] = None
    customer_tier: Optional[str] = None
    admin_email: Optional[str] = None
    support_email: Optional[str] = None


# ---------- Newsletter ----------

class NewsletterForm(FormModel):
    messages: ClassVar[Dict[str, str]] = {
        "email": EMAIL_MESSAGE,
        "name": "Name muss mindestens 2 Zeichen lang sein",
        "source": "Ungültige Quelle",
    }

    email: Annotated[Email, AfterValidator(lambda value: value.lower())]
    name: Optional[Name] = None
    source: Optional[Annotated[str, _escaped(NAME_MAX_LENGTH)]] = None

    @field_validator("name", "source", mode="before")
    @classmethod
    def blank_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class EmailPreferences(CamelModel):
    welcome_series: bool = True
    product_recommendations: bool = True
    trend_updates: bool = True
    sale_notifications: bool = True
    exclusive_offers: bool = True
    vip_offers: Optional[bool] = None
    early_access: Optional[bool] = None
    loyalty_rewards: Optional[bool] = None


class NewsletterSignup(CamelModel):
    email: str
    name: str
    timestamp: str
    source: str = "website_newsletter"
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    language: str = "unknown"
    referrer: str = "direct"
    welcome_code: str
    existing_customer: bool = False
    customer_id: Optional[str] = None
    customer_tier: str = "Neu"
    total_spent: float = 0
    total_orders: int = 0
    email_preferences: EmailPreferences = Field(default_factory=EmailPreferences)


class WelcomeEmailTrigger(BaseModel):
    trigger: str = "welcome_series"
    customer_email: str
    customer_name: str
    welcome_code: str
    discount_amount: int
    customer_tier: str
    timestamp: str


# ---------- Stripe sync ----------

class CatalogProduct(BaseModel):
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    price: Decimal = Field(ge=0)
    category: Optional[str] = None
    airtable_id: Optional[str] = None
    sku: Optional[str] = None


class SyncedProduct(BaseModel):
    airtable_id: Optional[str] = None
    stripe_product_id: str
    stripe_price_id: str
    name: str
    price: float


class SyncResult(BaseModel):
    success: bool = True
    message: str
    synced_count: int
    total_count: int
    failed_count: int
    products: List[SyncedProduct]
