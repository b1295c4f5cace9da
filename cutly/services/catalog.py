from __future__ import annotations

import logging
import math
from typing import Annotated, Any, Mapping, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from cutly.db import q, x
from cutly.errors import IntegrityViolation, NotFoundError, UniquenessError, ValidationError
from cutly.events import publish
from cutly.utils import iso_now, new_id

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = ["shampoings", "colorations", "soins", "accessoires"]

PRODUCT_COLUMNS = [
    "id",
    "tenant_id",
    "sku",
    "name",
    "brand",
    "category",
    "unit",
    "unit_size",
    "retail_price",
    "cost_price",
    "min_stock_threshold",
    "tax_rate",
    "is_active",
    "expires_in_days",
    "updated_at",
]

# Columns a form or CSV row may set (everything but identity and bookkeeping).
EDITABLE_COLUMNS = [c for c in PRODUCT_COLUMNS if c not in {"id", "tenant_id", "updated_at"}]

SkuStr = Annotated[str, StringConstraints(strip_whitespace=True, to_upper=True, min_length=2, max_length=64)]
NameStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=200)]
CategoryStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=100)]

_TRUE_WORDS = {"oui", "vrai", "o"}
_FALSE_WORDS = {"non", "faux", "n"}


class ProductInput(BaseModel):
    """
    Product fields as submitted by the edit form or a CSV row.

    - Blank strings are treated as "not provided" so defaults apply.
    - `min_stock_thresh` is accepted as an alias of `min_stock_threshold`
      (older CSV exports use it).
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    sku: SkuStr
    name: NameStr
    brand: Optional[str] = None
    category: CategoryStr
    unit: str = "unit"
    unit_size: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    retail_price: float = Field(default=0, ge=0, allow_inf_nan=False)
    cost_price: float = Field(default=0, ge=0, allow_inf_nan=False)
    min_stock_threshold: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("min_stock_threshold", "min_stock_thresh"),
    )
    tax_rate: float = Field(default=0, ge=0, le=0.3, allow_inf_nan=False)
    is_active: bool = True
    expires_in_days: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def drop_blanks(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            return {
                k: v
                for k, v in data.items()
                if v is not None
                and not (isinstance(v, str) and not v.strip())
                and not (isinstance(v, float) and math.isnan(v))
            }
        return data

    @field_validator("brand", "unit", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("is_active", mode="before")
    @classmethod
    def french_booleans(cls, v: Any) -> Any:
        if isinstance(v, str):
            s = v.strip().lower()
            if s in _TRUE_WORDS:
                return True
            if s in _FALSE_WORDS:
                return False
        return v


def _format_errors(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return ", ".join(parts)


def validate_product(data: Mapping[str, Any]) -> ProductInput:
    try:
        return ProductInput.model_validate(dict(data))
    except PydanticValidationError as e:
        raise ValidationError(_format_errors(e)) from e


def require_tenant(tenant_id: Optional[str]) -> str:
    t = str(tenant_id or "").strip()
    if not t:
        raise ValidationError("Identifiant tenant manquant.")
    return t


def product_values(product: ProductInput) -> dict[str, Any]:
    v = product.model_dump()
    v["is_active"] = 1 if v["is_active"] else 0
    return {c: v[c] for c in EDITABLE_COLUMNS}


def _product_dict(row) -> dict[str, Any]:
    d = dict(row)
    d["is_active"] = bool(d.get("is_active"))
    return d


def ensure_tenant(conn, tenant_id: str, name: Optional[str] = None) -> None:
    x(
        conn,
        "INSERT OR IGNORE INTO tenants (id, name, created_at) VALUES (?, ?, ?)",
        (tenant_id, name or tenant_id, iso_now()),
    )


def list_tenants(conn):
    return q(conn, "SELECT id, name FROM tenants ORDER BY name")


def get_product(conn, tenant_id: str, product_id: str) -> dict[str, Any]:
    rows = q(
        conn,
        f"SELECT {', '.join(PRODUCT_COLUMNS)} FROM products WHERE id=? AND tenant_id=?",
        (product_id, tenant_id),
    )
    if not rows:
        raise NotFoundError("Produit introuvable.")
    return _product_dict(rows[0])


def sku_taken(conn, tenant_id: str, sku: str, *, exclude_id: Optional[str] = None) -> bool:
    sql = "SELECT id FROM products WHERE tenant_id=? AND sku=?"
    params: list[Any] = [tenant_id, sku]
    if exclude_id:
        sql += " AND id<>?"
        params.append(exclude_id)
    return bool(q(conn, sql + " LIMIT 1", params))


def _raise_if_duplicate(e: IntegrityViolation) -> None:
    if "UNIQUE" in str(e).upper():
        raise UniquenessError("SKU déjà utilisé pour ce tenant.") from e


def create_product(conn, tenant_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    tenant_id = require_tenant(tenant_id)
    product = validate_product(data)

    # Fast path for the form; the UNIQUE(tenant_id, sku) constraint is the real guard.
    if sku_taken(conn, tenant_id, product.sku):
        raise UniquenessError("SKU déjà utilisé pour ce tenant.")

    ensure_tenant(conn, tenant_id)
    row = {"id": new_id(), "tenant_id": tenant_id, **product_values(product), "updated_at": iso_now()}
    try:
        x(
            conn,
            f"INSERT INTO products ({', '.join(row)}) VALUES ({', '.join('?' for _ in row)})",
            row.values(),
        )
    except IntegrityViolation as e:
        _raise_if_duplicate(e)
        raise

    logger.info("Created product %s (%s) for tenant %s", row["id"], row["sku"], tenant_id)
    publish("products", "INSERT", tenant_id, row)
    return _product_dict(row)


def update_product(conn, tenant_id: str, product_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    tenant_id = require_tenant(tenant_id)
    if not product_id:
        raise ValidationError("Identifiant produit manquant.")
    product = validate_product(data)

    get_product(conn, tenant_id, product_id)
    if sku_taken(conn, tenant_id, product.sku, exclude_id=product_id):
        raise UniquenessError("SKU déjà utilisé pour ce tenant.")

    values = {**product_values(product), "updated_at": iso_now()}
    try:
        x(
            conn,
            f"UPDATE products SET {', '.join(f'{c}=?' for c in values)} WHERE id=? AND tenant_id=?",
            [*values.values(), product_id, tenant_id],
        )
    except IntegrityViolation as e:
        _raise_if_duplicate(e)
        raise

    updated = get_product(conn, tenant_id, product_id)
    logger.info("Updated product %s for tenant %s", product_id, tenant_id)
    publish("products", "UPDATE", tenant_id, updated)
    return updated


def _set_active(conn, tenant_id: str, product_id: str, active: bool) -> dict[str, Any]:
    tenant_id = require_tenant(tenant_id)
    if not product_id:
        raise ValidationError("Identifiant produit manquant.")

    n = x(
        conn,
        "UPDATE products SET is_active=?, updated_at=? WHERE id=? AND tenant_id=?",
        (1 if active else 0, iso_now(), product_id, tenant_id),
    )
    if n == 0:
        raise NotFoundError("Produit introuvable.")

    row = get_product(conn, tenant_id, product_id)
    publish("products", "UPDATE", tenant_id, row)
    return row


def archive_product(conn, tenant_id: str, product_id: str) -> dict[str, Any]:
    """
    Soft delete. Batches and movements keep pointing at the product, so the
    ledger history stays valid; there is no hard delete.
    """
    row = _set_active(conn, tenant_id, product_id, False)
    logger.info("Archived product %s for tenant %s", product_id, tenant_id)
    return row


def restore_product(conn, tenant_id: str, product_id: str) -> dict[str, Any]:
    return _set_active(conn, tenant_id, product_id, True)


def list_categories(conn, tenant_id: str) -> list[str]:
    rows = q(
        conn,
        "SELECT DISTINCT category FROM products WHERE tenant_id=? ORDER BY category",
        (tenant_id,),
    )
    return [str(r["category"]) for r in rows]
