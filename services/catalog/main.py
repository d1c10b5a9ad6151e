"""Catalog service API built with FastAPI.

This module exposes endpoints to check service health, read a product's
stock, set it, and decrement it atomically for paid orders. Validation is
performed with Pydantic models, while persistence is delegated to the
SQLAlchemy-backed repository in ``repo.CatalogRepo``.
"""

import uuid, logging
import time
from typing import Annotated, Optional

from fastapi import FastAPI, Header, HTTPException, Path, Request
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import CatalogRepo, init_db, engine

app = FastAPI(title="Catalog Service")

REF_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"

logger = logging.getLogger("catalog")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # short active wait until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class ProductOut(BaseModel):
    """Stock view of a product.

    Attributes:
        ref: Product reference.
        title: Display title.
        stock: Available quantity, or null for unlimited.
        previous: Stock before the operation (decrement responses only).
    """
    ref: str
    title: str = ""
    stock: Optional[int] = None
    previous: Optional[int] = None


class StockIn(BaseModel):
    stock: Optional[int] = Field(default=None, ge=0)
    title: Optional[str] = Field(default=None, max_length=200)


class DecrementIn(BaseModel):
    quantity: int = Field(gt=0)


def _out(row) -> ProductOut:
    return ProductOut(ref=row.ref, title=row.title, stock=row.stock, previous=row.previous)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/products/{ref}", response_model=ProductOut)
def get_product(ref: str = Path(pattern=REF_PATTERN)):
    row = CatalogRepo().get(ref)
    if row is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return _out(row)


@app.put("/products/{ref}", response_model=ProductOut)
def put_stock(req: StockIn, ref: str = Path(pattern=REF_PATTERN)):
    """Set absolute stock for a product, creating it if needed."""
    row = CatalogRepo().upsert(ref, req.stock, req.title)
    logger.info("stock set", extra={"product_ref": ref, "stock": row.stock})
    return _out(row)


@app.post("/products/{ref}/decrement", response_model=ProductOut)
def decrement(
    req: DecrementIn,
    ref: str = Path(pattern=REF_PATTERN),
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key", max_length=200)] = None,
):
    """Decrement stock by ``quantity`` under a row lock, clamped at zero.

    With an ``Idempotency-Key`` header a retried request returns the
    outcome of the first one and stock is taken only once.

    Raises:
        HTTPException: 404 when the product does not exist; 409 when the
            key was already used for a different product or quantity.
    """
    try:
        row = CatalogRepo().decrement(ref, req.quantity, key=idempotency_key)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if row is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    if row.replayed:
        logger.info("stock decrement replayed",
                    extra={"product_ref": ref, "idempotency_key": idempotency_key, "stock": row.stock})
    else:
        logger.info("stock decremented",
                    extra={"product_ref": ref, "quantity": req.quantity, "previous": row.previous, "stock": row.stock})
    return _out(row)


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
