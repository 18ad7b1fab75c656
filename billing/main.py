from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse

from billing.db.client import close_pool
from billing.logging import setup_logging
from billing.routes import health, webhooks
from billing.utils.security import require_basic_auth

setup_logging()


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await webhooks.get_ingestion_service().processor.drain()
    close_pool()


app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(health.router)
app.include_router(webhooks.router)


@app.get("/openapi.json", include_in_schema=False)
def custom_openapi(_: None = Depends(require_basic_auth)):
    return JSONResponse(content=app.openapi())


@app.get("/docs", include_in_schema=False)
def custom_swagger_ui(_: None = Depends(require_basic_auth)):
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Billing Webhooks API")


@app.get("/redoc", include_in_schema=False)
def custom_redoc(_: None = Depends(require_basic_auth)):
    return get_redoc_html(openapi_url="/openapi.json", title="Billing Webhooks API ReDoc")
