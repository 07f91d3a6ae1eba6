from __future__ import annotations
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Airtable (customer + product store)
    AIRTABLE_API_URL: str = "https://api.airtable.com/v0"
    AIRTABLE_BASE_ID: Optional[str] = None
    AIRTABLE_API_KEY: Optional[str] = None
    AIRTABLE_CUSTOMER_TABLE: str = "Customers"
    AIRTABLE_PRODUCT_TABLE: str = "Products"

    # n8n workflow automation
    N8N_WEBHOOK_URL: Optional[str] = None
    N8N_CONTACT_ENDPOINT: str = "/contact-form"
    N8N_NEWSLETTER_ENDPOINT: str = "/newsletter-signup"
    N8N_EMAIL_AUTOMATION_ENDPOINT: str = "/email-automation"

    ADMIN_EMAIL: str = "admin@dressforpleasure.com"
    SUPPORT_EMAIL: str = "support@dressforpleasure.com"

    TICKET_PREFIX: str = "DFP"
    WELCOME_DISCOUNT: int = 15
    WELCOME_CODE_PREFIX: str = "WELCOME"
    DOUBLE_OPT_IN: bool = False

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_CURRENCY: str = "eur"

    HTTP_TIMEOUT_SECONDS: float = 10.0
    LOG_LEVEL: str = "INFO"

    # Storefront
    STOREFRONT_PAGE_SIZE: int = 9
    STOREFRONT_INTAKE_URL: str = "http://localhost:8000/api"


@lru_cache
def get_settings() -> Settings:
    return Settings()
