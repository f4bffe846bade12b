"""Catalog service API built with FastAPI.

This module exposes products and their stock ledgers to the orders gateway.
Validation is performed with Pydantic models, while persistence and the
compare-and-save of ledgers is delegated to the SQLAlchemy-backed
repository in ``repo.LedgerRepo``.
"""

import logging
import time
import uuid
from datetime import datetime
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .repo import LedgerRejected, LedgerRepo, ProductNotFound, VersionConflict, engine, init_db

app = FastAPI(title="Catalog Service")

ProductId = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")

logger = logging.getLogger("catalog")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class SaleIn(BaseModel):
    order_id: str
    quantity: int = Field(gt=0)
    gross_price: Decimal
    date: datetime


class Ledger(BaseModel):
    """Stock ledger of one product.

    Attributes:
        stock: Units physically available.
        reservations: Units held per order id.
        sales: Committed sales, oldest first.
        version: Optimistic-concurrency token.
    """

    product_id: str
    stock: int
    reservations: dict[str, int] = Field(default_factory=dict)
    sales: list[SaleIn] = Field(default_factory=list)
    version: int = 0


class SaveLedgerRequest(BaseModel):
    expected_version: int = Field(ge=0)
    ledger: Ledger


class SaveLedgerResponse(BaseModel):
    version: int


class ProductOut(BaseModel):
    id: str
    name: str
    gross_price: Decimal
    image_url: str = ""
    ledger: Ledger


class ProductIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    gross_price: Decimal = Field(ge=0, decimal_places=2)
    image_url: str = ""
    stock: int = Field(ge=0)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: ProductId):
    p = LedgerRepo().get_product(product_id)
    if p is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    return p


@app.get("/products/{product_id}/ledger", response_model=Ledger)
def get_ledger(product_id: ProductId):
    ledger = LedgerRepo().get_ledger(product_id)
    if ledger is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    return ledger


@app.put("/products/{product_id}/ledger", response_model=SaveLedgerResponse)
def save_ledger(product_id: ProductId, req: SaveLedgerRequest):
    """Compare-and-save a product ledger.

    Raises:
        HTTPException: 404 for an unknown product, 409 ``VERSION_CONFLICT``
            when ``expected_version`` is stale, 422 ``LEDGER_INVARIANT`` when
            the ledger would break a stock invariant.
    """
    if req.ledger.product_id != product_id:
        raise HTTPException(status_code=422, detail="LEDGER_INVARIANT")
    try:
        version = LedgerRepo().save_ledger(
            product_id, req.expected_version, req.ledger.model_dump()
        )
    except ProductNotFound:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    except VersionConflict:
        raise HTTPException(status_code=409, detail="VERSION_CONFLICT")
    except LedgerRejected as e:
        logger.warning("ledger rejected", extra={"product_id": product_id, "reason": str(e)})
        raise HTTPException(status_code=422, detail="LEDGER_INVARIANT")
    return SaveLedgerResponse(version=version)


@app.put("/products/{product_id}", response_model=ProductOut)
def upsert_product(product_id: ProductId, req: ProductIn):
    try:
        return LedgerRepo().upsert_product(product_id, req.name, req.gross_price, req.image_url, req.stock)
    except LedgerRejected:
        raise HTTPException(status_code=422, detail="LEDGER_INVARIANT")


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
