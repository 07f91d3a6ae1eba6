"""
Storefront state container.

Holds catalog, filtered view, search results, pagination, cart, notifications
and user preferences. All transitions are plain method calls on one
``StorefrontStore``; presentation layers subscribe and re-render on the
events it emits. Cart and preferences are persisted to a ``LocalStorage``
backend after each change.
"""
from __future__ import annotations
import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import httpx
from pydantic import ValidationError as SchemaError

from database import get_documents
from schemas import CartItem, CartSnapshot, Product
from settings import Settings

logger = logging.getLogger(__name__)

ALL_CATEGORIES = "all"
CART_KEY = "cart"
PREFERENCES_KEY = "user_preferences"
SEARCH_DEBOUNCE_SECONDS = 0.3
SEARCH_MIN_LENGTH = 2
NOTIFICATION_DURATION_SECONDS = 5.0

CATEGORY_LABELS = {
    "oberteile": "Oberteile",
    "kleider": "Kleider",
    "handtaschen": "Handtaschen",
    "schmuck": "Schmuck",
    "accessoires": "Accessoires",
}

SAMPLE_PRODUCTS: list[dict] = [
    {"id": "prod1", "name": "Elegante Seidenbluse Marianne", "category": "oberteile", "price": "89.99", "image": "https://images.unsplash.com/photo-1594633312681-425c7b97ccd1?w=400&h=500&fit=crop", "description": "Zeitlose Eleganz trifft auf modernen Komfort. Diese exquisite Seidenbluse in Champagner-Ton ist das perfekte Stück für besondere Anlässe.", "featured": True, "inStock": True},
    {"id": "prod2", "name": "Designer Handtasche Milano", "category": "handtaschen", "price": "159.99", "image": "https://images.unsplash.com/photo-1584917865442-de89df76afd3?w=400&h=500&fit=crop", "description": "Luxuriöse Handtasche aus italienischem Leder in klassischem Cognac. Mit goldenen Beschlägen und abnehmbarem Schulterriemen.", "featured": True, "inStock": True},
    {"id": "prod3", "name": "Cashmere Pullover Sophie", "category": "oberteile", "price": "129.99", "image": "https://images.unsplash.com/photo-1434389677669-e08b4cac3105?w=400&h=500&fit=crop", "description": "Kuschelig weicher Cashmere-Pullover in zartem Rosé. Perfekt für kalte Tage, wenn Komfort auf Stil trifft.", "featured": False, "inStock": True},
    {"id": "prod4", "name": "Vintage Perlenkette Classic", "category": "schmuck", "price": "79.99", "image": "https://images.unsplash.com/photo-1515562141207-7a88fb7ce338?w=400&h=500&fit=crop", "description": "Klassische Perlenkette mit echten Süßwasserperlen. Ein zeitloses Schmuckstück, das jedes Outfit veredelt.", "featured": True, "inStock": True},
    {"id": "prod5", "name": "Sommer Maxikleid Luna", "category": "kleider", "price": "94.99", "image": "https://images.unsplash.com/photo-1515372039744-b8f02a3ae446?w=400&h=500&fit=crop", "description": "Fließendes Maxikleid in floralem Blütenprint. Perfekt für Sommerfeste und Urlaubsmomente.", "featured": True, "inStock": True},
    {"id": "prod6", "name": "Seide Schal Parisian Chic", "category": "accessoires", "price": "69.99", "image": "https://images.unsplash.com/photo-1601924994987-69e26d50dc26?w=400&h=500&fit=crop", "description": "Luxuriöser Seidenschal mit elegantem Paisley-Muster. Handgerollt und in traditioneller Färbetechnik hergestellt.", "featured": False, "inStock": True},
]


def format_currency(amount: Decimal | float) -> str:
    """Format as de-DE euro amount, e.g. ``1.234,56 €``."""
    text = f"{Decimal(str(amount)):,.2f}"
    return text.replace(",", "_").replace(".", ",").replace("_", ".") + " €"


def category_label(category: str) -> str:
    return CATEGORY_LABELS.get(category, category)


# ---------- Local storage ----------

class LocalStorage(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> bool: ...

    def remove(self, key: str) -> bool: ...


class MemoryStorage:
    """Keeps JSON-encoded strings, like a browser's localStorage."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    def get(self, key: str) -> Any:
        raw = self.data.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.error("Storage get error: %s is not valid JSON", key)
            return None

    def set(self, key: str, value: Any) -> bool:
        try:
            self.data[key] = json.dumps(value)
        except (TypeError, ValueError) as exc:
            logger.error("Storage set error for %s: %s", key, exc)
            return False
        return True

    def remove(self, key: str) -> bool:
        self.data.pop(key, None)
        return True


# ---------- Catalog sources ----------

class CatalogSource(Protocol):
    async def fetch(self) -> List[Product]: ...


class StaticCatalogSource:
    def __init__(self, products: Optional[Iterable[dict]] = None, delay: float = 0.0) -> None:
        self.products = list(SAMPLE_PRODUCTS if products is None else products)
        self.delay = delay

    async def fetch(self) -> List[Product]:
        if self.delay:
            await asyncio.sleep(self.delay)
        return [Product.model_validate(p) for p in self.products]


class AirtableCatalogSource:
    """Reads every record of the Airtable products table."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings, limit: Optional[int] = None) -> None:
        self.client = client
        self.settings = settings
        self.limit = limit

    @staticmethod
    def to_product(record: dict) -> Product:
        fields = record.get("fields") or {}
        image = fields.get("image_url")
        attachments = fields.get("image") or []
        if not image and isinstance(attachments, list) and attachments:
            image = attachments[0].get("url")
        return Product(
            id=record["id"],
            name=fields["name"],
            category=fields["category"],
            price=Decimal(str(fields["price"])),
            image=image,
            description=fields.get("description") or "",
            featured=bool(fields.get("featured", False)),
            in_stock=bool(fields.get("in_stock", True)),
        )

    async def fetch(self) -> List[Product]:
        records = await get_documents(
            self.client, self.settings, self.settings.AIRTABLE_PRODUCT_TABLE, limit=self.limit
        )
        return [self.to_product(r) for r in records]


# ---------- UI state ----------

@dataclass
class Notification:
    id: int
    message: str
    level: str = "info"
    duration: float = NOTIFICATION_DURATION_SECONDS


@dataclass
class UIState:
    loading: bool = False
    notifications: List[Notification] = field(default_factory=list)


class Debouncer:
    """Runs ``callback`` once ``delay`` seconds after the last call."""

    def __init__(self, delay: float, callback: Callable[..., Any]) -> None:
        self.delay = delay
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    def _fire(self, *args: Any) -> None:
        self._handle = None
        self.callback(*args)

    def __call__(self, *args: Any) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire, *args)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


Listener = Callable[[str, "StorefrontStore"], None]


# ---------- Store ----------

class StorefrontStore:
    def __init__(
        self,
        source: Optional[CatalogSource] = None,
        storage: Optional[LocalStorage] = None,
        page_size: int = 9,
        search_delay: float = SEARCH_DEBOUNCE_SECONDS,
    ) -> None:
        self.source: CatalogSource = source or StaticCatalogSource()
        self.storage: LocalStorage = storage or MemoryStorage()
        self.page_size = page_size

        self.products: List[Product] = []
        self.filtered_products: List[Product] = []
        self.current_category = ALL_CATEGORIES
        self.current_page = 1
        self.search_query = ""
        self.search_results: List[Product] = []

        self._cart: Dict[str, CartItem] = {}
        self.cart_total = Decimal("0")
        self.cart_count = 0

        self.ui = UIState()
        self.preferences: Dict[str, Any] = {}

        self._listeners: List[Listener] = []
        self._notification_ids = itertools.count(1)
        self._search_debouncer = Debouncer(search_delay, self.search)

    # Subscriptions

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, self)
            except Exception:
                logger.exception("Storefront listener failed on %s", event)

    # Notifications

    def notify(self, message: str, level: str = "info", duration: float = NOTIFICATION_DURATION_SECONDS) -> Notification:
        notification = Notification(id=next(self._notification_ids), message=message, level=level, duration=duration)
        self.ui.notifications.append(notification)
        self._emit("notification")
        return notification

    def dismiss(self, notification_id: int) -> None:
        before = len(self.ui.notifications)
        self.ui.notifications = [n for n in self.ui.notifications if n.id != notification_id]
        if len(self.ui.notifications) != before:
            self._emit("notification")

    def clear_notifications(self) -> None:
        self.ui.notifications = []
        self._emit("notification")

    # Catalog

    async def load_catalog(self) -> bool:
        self.ui.loading = True
        self._emit("loading")
        try:
            products = list(await self.source.fetch())
        except Exception:
            logger.exception("Error loading products")
            self.notify("Fehler beim Laden der Produkte", "error")
            return False
        finally:
            self.ui.loading = False
            self._emit("loading")

        self.products = products
        self.current_category = ALL_CATEGORIES
        self.filtered_products = list(products)
        self.current_page = 1
        self._emit("catalog")
        return True

    def filter_by_category(self, category: str) -> List[Product]:
        self.current_category = category
        if category == ALL_CATEGORIES:
            self.filtered_products = list(self.products)
        else:
            self.filtered_products = [p for p in self.products if p.category == category]
        self.current_page = 1
        self._emit("filter")
        return self.filtered_products

    def get_product(self, product_id: str) -> Optional[Product]:
        return next((p for p in self.products if p.id == product_id), None)

    @property
    def featured_products(self) -> List[Product]:
        return [p for p in self.products if p.featured]

    # Search

    def search(self, query: str) -> List[Product]:
        query = (query or "").strip()
        if not query:
            return self.search_results
        needle = query.lower()
        self.search_query = query
        self.search_results = [
            p
            for p in self.products
            if needle in p.name.lower() or needle in p.description.lower() or needle in p.category.lower()
        ]
        self._emit("search")
        return self.search_results

    def on_search_input(self, query: str) -> None:
        """Keystroke entry point: debounced, and ignores queries shorter than two characters."""
        query = (query or "").strip()
        if len(query) < SEARCH_MIN_LENGTH:
            self._search_debouncer.cancel()
            return
        try:
            self._search_debouncer(query)
        except RuntimeError:
            # no running event loop to schedule on
            self.search(query)

    def clear_search(self) -> None:
        self._search_debouncer.cancel()
        self.search_query = ""
        self.search_results = []
        self._emit("search")

    # Pagination

    @property
    def visible_products(self) -> List[Product]:
        return self.filtered_products[: self.current_page * self.page_size]

    @property
    def has_more(self) -> bool:
        return self.current_page * self.page_size < len(self.filtered_products)

    def paginate(self, page: Any) -> List[Product]:
        try:
            page = int(page)
        except (TypeError, ValueError):
            self.notify("Ungültige Seite", "warning")
            return self.visible_products
        self.current_page = max(1, page)
        self._emit("page")
        return self.visible_products

    def load_more(self) -> List[Product]:
        if self.has_more:
            self.current_page += 1
            self._emit("page")
        return self.visible_products

    # Cart

    @property
    def cart_items(self) -> List[CartItem]:
        return list(self._cart.values())

    @property
    def cart(self) -> CartSnapshot:
        return CartSnapshot(items=self.cart_items, total=self.cart_total, count=self.cart_count)

    def _recompute_totals(self) -> None:
        self.cart_count = sum(item.quantity for item in self._cart.values())
        self.cart_total = sum((item.line_total for item in self._cart.values()), Decimal("0"))

    def _cart_changed(self) -> None:
        self._recompute_totals()
        self.persist_cart()
        self._emit("cart")

    def add_to_cart(self, product: Product, quantity: int = 1) -> bool:
        if not isinstance(quantity, int) or quantity < 1:
            self.notify("Ungültige Menge", "warning")
            return False
        if not product.in_stock:
            self.notify(f"{product.name} ist derzeit nicht auf Lager", "warning")
            return False
        existing = self._cart.get(product.id)
        if existing is not None:
            self._cart[product.id] = existing.model_copy(update={"quantity": existing.quantity + quantity})
        else:
            self._cart[product.id] = CartItem.from_product(product, quantity)
        self._cart_changed()
        self.notify(f"{product.name} wurde zum Warenkorb hinzugefügt", "success")
        return True

    def remove_from_cart(self, product_id: str) -> None:
        if self._cart.pop(product_id, None) is not None:
            self._cart_changed()

    def set_quantity(self, product_id: str, quantity: Any) -> None:
        item = self._cart.get(product_id)
        if item is None:
            return
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            self.notify("Ungültige Menge", "warning")
            return
        if quantity <= 0:
            self.remove_from_cart(product_id)
            return
        self._cart[product_id] = item.model_copy(update={"quantity": quantity})
        self._cart_changed()

    def clear_cart(self) -> None:
        self._cart = {}
        self._cart_changed()

    def complete_checkout(self) -> None:
        self.clear_cart()

    def persist_cart(self) -> bool:
        return self.storage.set(CART_KEY, self.cart.to_payload())

    def hydrate_cart_from_storage(self) -> None:
        """Restore the cart; anything unreadable counts as an empty cart."""
        self._cart = {}
        saved = self.storage.get(CART_KEY)
        items = saved.get("items") if isinstance(saved, dict) else None
        for raw in items if isinstance(items, list) else []:
            try:
                item = CartItem.model_validate(raw)
            except SchemaError:
                logger.warning("Dropping unreadable cart line from storage")
                continue
            existing = self._cart.get(item.id)
            if existing is not None:
                item = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
            self._cart[item.id] = item
        self._recompute_totals()
        self._emit("cart")

    # Preferences

    def load_user_preferences(self) -> Dict[str, Any]:
        saved = self.storage.get(PREFERENCES_KEY)
        if isinstance(saved, dict):
            self.preferences = saved
        return self.preferences

    def save_user_preferences(self) -> bool:
        return self.storage.set(PREFERENCES_KEY, self.preferences)

    def set_preference(self, key: str, value: Any) -> None:
        self.preferences[key] = value
        self.save_user_preferences()
        self._emit("preferences")

    async def start(self) -> None:
        await self.load_catalog()
        self.hydrate_cart_from_storage()
        self.load_user_preferences()


# ---------- Forms ----------

class FormsClient:
    """Sends storefront forms to the intake endpoints and reports back as notifications."""

    def __init__(self, store: StorefrontStore, client: httpx.AsyncClient, base_url: str) -> None:
        self.store = store
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _submit(self, path: str, payload: dict, failure_message: str) -> Optional[dict]:
        try:
            response = await self.client.post(f"{self.base_url}{path}", json=payload)
            body = response.json() if response.content else {}
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Form submission to %s failed: %s", path, exc)
            self.store.notify(failure_message, "error")
            return None
        if response.is_success:
            self.store.notify(body.get("message") or "Erfolgreich gesendet", "success")
            return body
        if response.status_code == 409:
            self.store.notify(body.get("message") or failure_message, "info")
        elif response.status_code == 400 and body.get("details"):
            self.store.notify("; ".join(body["details"]), "warning")
        else:
            self.store.notify(failure_message, "error")
        return None

    async def submit_newsletter(self, email: str, name: Optional[str] = None) -> Optional[dict]:
        if not (email or "").strip():
            self.store.notify("Bitte geben Sie Ihre E-Mail-Adresse ein", "warning")
            return None
        payload = {"email": email, "source": "website"}
        if name:
            payload["name"] = name
        return await self._submit(
            "/newsletter-signup", payload, "Fehler bei der Anmeldung. Bitte versuchen Sie es erneut."
        )

    async def submit_contact(self, name: str, email: str, subject: str, message: str) -> Optional[dict]:
        if not all((value or "").strip() for value in (name, email, message)):
            self.store.notify("Bitte füllen Sie alle erforderlichen Felder aus", "warning")
            return None
        payload = {"name": name, "email": email, "subject": subject, "message": message}
        return await self._submit(
            "/contact-form", payload, "Fehler beim Senden der Nachricht. Bitte versuchen Sie es erneut."
        )


def create_storefront(
    settings: Settings, client: httpx.AsyncClient, storage: Optional[LocalStorage] = None
) -> tuple[StorefrontStore, FormsClient]:
    """Wire a store and forms client from configuration; Airtable is used when configured."""
    if settings.AIRTABLE_BASE_ID and settings.AIRTABLE_API_KEY:
        source: CatalogSource = AirtableCatalogSource(client, settings)
    else:
        source = StaticCatalogSource()
    store = StorefrontStore(source=source, storage=storage, page_size=settings.STOREFRONT_PAGE_SIZE)
    return store, FormsClient(store, client, settings.STOREFRONT_INTAKE_URL)
