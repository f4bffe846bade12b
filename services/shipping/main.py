"""Shipping price service API built with FastAPI.

Quotes the delivery price for an address. The price table is keyed by the
address ``state``; persistence is delegated to ``repo.ShippingRepo``.
"""

import logging
import time
import uuid
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .repo import ShippingRepo, engine, init_db

app = FastAPI(title="Shipping Service")

Currency = constr(pattern=r"^[A-Z]{3}$")

logger = logging.getLogger("shipping")
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


class AddressIn(BaseModel):
    country: str = ""
    state: str = Field(min_length=1)
    city: str = ""
    neighborhood: str = ""
    street: str = ""
    department: str = ""


class QuoteResponse(BaseModel):
    price: Decimal
    money: str


class PriceIn(BaseModel):
    price: Decimal = Field(ge=0, decimal_places=2)
    money: Currency = "CLP"
    description: str = ""


class PriceOut(BaseModel):
    location: str
    price: Decimal
    money: str
    description: str


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/prices/quote", response_model=QuoteResponse)
def quote(address: AddressIn):
    """Quote the delivery price for ``address``.

    Raises:
        HTTPException: 404 ``NO_PRICE`` when the state has no price.
    """
    row = ShippingRepo().get_price(address.state)
    if row is None:
        logger.info("no shipping price", extra={"state": address.state})
        raise HTTPException(status_code=404, detail="NO_PRICE")
    return QuoteResponse(price=row["price"], money=row["money"])


@app.put("/prices/{location}", response_model=PriceOut)
def upsert_price(location: str, req: PriceIn):
    if not location.strip():
        raise HTTPException(status_code=422, detail="INVALID_LOCATION")
    return ShippingRepo().upsert(location, req.price, req.money, req.description)


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
