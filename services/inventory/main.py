"""Inventory service API built with FastAPI.

Exposes live product price/stock lookups, an atomic stock decrement
floored at zero, and an upsert used to seed the catalog. Persistence is
delegated to the SQLAlchemy-backed ``repo.InventoryRepo``.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from pythonjsonlogger.json import JsonFormatter
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from repo import InventoryRepo, engine, init_db

logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)

DB_WAIT_SECS = 30


def _wait_for_db():
    # brief active wait until the database accepts connections
    deadline = time.time() + DB_WAIT_SECS
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            return
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _wait_for_db()
    init_db()
    yield


app = FastAPI(title="Inventory Service", lifespan=lifespan)


class ProductIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    discount_percent: int = Field(default=0, ge=0, le=100)
    stock: int = Field(default=0, ge=0)


class ProductOut(BaseModel):
    id: str
    name: str
    price: Decimal
    discount_percent: int
    stock: int


class DecrementRequest(BaseModel):
    quantity: int = Field(gt=0)
    key: Optional[str] = Field(default=None, min_length=1, max_length=128)


class DecrementResponse(BaseModel):
    id: str
    stock: int
    applied: bool


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str):
    product = InventoryRepo().get(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    return product


@app.put("/products/{product_id}", response_model=ProductOut)
def upsert_product(product_id: str, body: ProductIn):
    return InventoryRepo().upsert(product_id, body.name, body.price, body.discount_percent, body.stock)


@app.post("/products/{product_id}/decrement", response_model=DecrementResponse)
def decrement_stock(product_id: str, body: DecrementRequest):
    """Lower stock by ``quantity`` in one atomic update, flooring at zero.

    A repeated ``key`` is acknowledged with ``applied=false`` and leaves
    stock as it is.

    Raises:
        HTTPException: 404 when the product is unknown.
    """
    result = InventoryRepo().decrement(product_id, body.quantity, key=body.key)
    if result is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    stock, applied = result
    logger.info(
        "stock decremented" if applied else "duplicate decrement ignored",
        extra={"product_id": product_id, "quantity": body.quantity, "stock": stock, "key": body.key},
    )
    return DecrementResponse(id=product_id, stock=stock, applied=applied)


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
