import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response

from factoring.core.cache import close_cache, init_cache
from factoring.core.config import settings
from factoring.core.database import init_db
from factoring.routers import admin, anchor, documents, invoices, marketplace, notifications

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

OPENAPI_TAGS = [
    {"name": "Invoices", "description": "Create, submit and track invoices through their lifecycle."},
    {"name": "Anchor", "description": "Anchor review queue and approval decisions."},
    {"name": "Admin", "description": "Verification, listing, settlement and maintenance."},
    {"name": "Marketplace", "description": "Browse listed invoices, place and accept offers."},
    {"name": "Notifications", "description": "In-app notifications and live notices."},
    {"name": "Documents", "description": "Signed downloads of invoice documents."},
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_db()
    cache = await init_cache(app)
    try:
        yield
    finally:
        await close_cache(cache)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "An invoice financing marketplace API. "
        "Sellers submit invoices, anchors approve them, admins verify and list them, "
        "and lenders compete with offers to fund them."
    ),
    openapi_tags=OPENAPI_TAGS,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count"],
)


@app.middleware("http")
async def options_handler(request: Request, call_next):  # type: ignore[no-untyped-def]
    if request.method == "OPTIONS":
        origin = request.headers.get("origin", "*")
        return Response(
            status_code=200,
            headers={
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Methods": "*",
                "Access-Control-Allow-Headers": "*",
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Max-Age": "86400",
            },
        )
    return await call_next(request)


app.include_router(invoices.router, prefix="/v1/invoices", tags=["Invoices"])
app.include_router(anchor.router, prefix="/v1/anchor", tags=["Anchor"])
app.include_router(admin.router, prefix="/v1/admin", tags=["Admin"])
app.include_router(marketplace.router, prefix="/v1/marketplace", tags=["Marketplace"])
app.include_router(
    notifications.router,
    prefix="/v1/notifications",
    tags=["Notifications"],
)
app.include_router(documents.router, prefix="/v1/documents", tags=["Documents"])


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "domain": settings.APP_DOMAIN,
        "status": "running",
    }
