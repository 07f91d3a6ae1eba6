import logging
from typing import AsyncIterator, Awaitable, TypeVar

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing import StripeCatalog, parse_sync_request, sync_products
from errors import IntakeError, InternalError, MethodNotAllowed
from intake import handle_contact, handle_newsletter, parse_body
from settings import Settings, get_settings

logging.basicConfig(
    level=get_settings().LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

T = TypeVar("T")

app = FastAPI(title="DressForPleasure API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

# Dependencies

async def get_http_client(settings: Settings = Depends(get_settings)) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
        yield client


async def run_handler(label: str, call: Awaitable[T]) -> T:
    try:
        return await call
    except IntakeError as exc:
        if exc.status_code >= 500:
            logger.error("%s failed (%s): %s", label, exc.error_type, exc)
        raise
    except Exception as exc:
        logger.exception("%s failed unexpectedly", label)
        raise InternalError() from exc


# Error rendering

@app.exception_handler(IntakeError)
async def intake_error_handler(request: Request, exc: IntakeError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=CORS_HEADERS)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 405:
        return JSONResponse(status_code=405, content=MethodNotAllowed().to_body(), headers=CORS_HEADERS)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=CORS_HEADERS)


def preflight() -> Response:
    return Response(status_code=200, headers=CORS_HEADERS)


# Health

@app.get("/")
async def root():
    return {"message": "DressForPleasure Backend Running"}


@app.get("/test")
async def test(settings: Settings = Depends(get_settings)):
    def status(value) -> str:
        return "✅ Set" if value else "❌ Not Set"

    return {
        "backend": "✅ Running",
        "airtable": status(settings.AIRTABLE_BASE_ID and settings.AIRTABLE_API_KEY),
        "n8n_webhook_url": status(settings.N8N_WEBHOOK_URL),
        "stripe": status(settings.STRIPE_SECRET_KEY),
        "double_opt_in": settings.DOUBLE_OPT_IN,
    }


# Contact form

@app.options("/api/contact-form")
async def contact_form_preflight():
    return preflight()


@app.post("/api/contact-form")
async def contact_form(
    request: Request,
    client: httpx.AsyncClient = Depends(get_http_client),
    settings: Settings = Depends(get_settings),
):
    logger.info("Contact form submission received")
    body = await request.body()
    result = await run_handler("contact form", handle_contact(body, request.headers, client, settings))
    return JSONResponse(content=result.body, headers=CORS_HEADERS)


# Newsletter

@app.options("/api/newsletter-signup")
async def newsletter_preflight():
    return preflight()


@app.post("/api/newsletter-signup")
async def newsletter_signup(
    request: Request,
    client: httpx.AsyncClient = Depends(get_http_client),
    settings: Settings = Depends(get_settings),
):
    logger.info("Newsletter signup received")
    body = await request.body()
    result = await run_handler("newsletter signup", handle_newsletter(body, request.headers, client, settings))
    for effect in result.side_effects:
        if not effect.ok:
            logger.warning("Newsletter side effect %s did not complete: %s", effect.name, effect.error)
    return JSONResponse(content=result.body, headers=CORS_HEADERS)


# Stripe product sync

@app.options("/api/sync-stripe-products")
async def sync_preflight():
    return preflight()


async def _sync(body: bytes, settings: Settings):
    records = parse_sync_request(parse_body(body))
    return await sync_products(StripeCatalog(settings), records)


@app.post("/api/sync-stripe-products")
async def sync_stripe_products(request: Request, settings: Settings = Depends(get_settings)):
    body = await request.body()
    result = await run_handler("stripe sync", _sync(body, settings))
    return JSONResponse(content=result.model_dump(), headers=CORS_HEADERS)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
