"""
Catalog filter engine.

Takes the product rows joined with their seller/shop contact fields, as the
store returns them (creation time ascending, then id), and picks the ones a
given audience may see for a given query. Nothing here touches the database.

Two visibility axes are combined: the moderation flag (approved) and the
deletion marker (status == deleted). Customers need approved AND not deleted;
admins and shop owners see everything and filter as they ask.
"""

import enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, field_validator

from moderation import ProductStatus, parse_product_status


class Audience(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class CatalogQuery(BaseModel):
    shop_id: Optional[int] = None
    search: Optional[str] = None
    category: Optional[str] = None
    approved: Optional[bool] = None
    status: Optional[ProductStatus] = None
    include_all: bool = False

    @field_validator("search", "category", mode="before")
    @classmethod
    def blank_is_absent(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("status", mode="before")
    @classmethod
    def resolve_status(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return parse_product_status(v)

    @field_validator("shop_id")
    @classmethod
    def positive_shop(cls, v):
        # shopId=0 or negative means "no shop", as does leaving it out
        return v if v and v > 0 else None

    @property
    def audience(self) -> Audience:
        return Audience.ADMIN if self.include_all else Audience.CUSTOMER

    @property
    def effective_approved(self) -> Optional[bool]:
        return self.approved if self.include_all else True


def visibility(approved: bool, status: ProductStatus, audience: Audience) -> bool:
    """Whether a product with this moderation state may be listed at all."""
    if audience is Audience.ADMIN:
        return True
    # approved is authoritative: approved + pending is still listed
    return bool(approved) and status is not ProductStatus.DELETED


def normalize_category(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def matches_search(row, term: str) -> bool:
    needle = term.lower()
    haystack = (row.name, row.category, row.description, getattr(row, "shop_name", None))
    return any(needle in (field or "").lower() for field in haystack)


def select_products(rows: Iterable, query: CatalogQuery) -> List:
    """Filter `rows` by `query`, preserving their order."""
    selected = list(rows)

    if query.shop_id is not None:
        selected = [r for r in selected if r.shop_id == query.shop_id]
    if query.status is not None:
        selected = [r for r in selected if r.status is query.status]
    if query.category:
        wanted = normalize_category(query.category)
        selected = [r for r in selected if normalize_category(r.category) == wanted]

    audience = query.audience
    approved = query.effective_approved
    selected = [r for r in selected if visibility(r.approved, r.status, audience)]
    if approved is not None:
        selected = [r for r in selected if bool(r.approved) is approved]

    if query.search:
        selected = [r for r in selected if matches_search(r, query.search)]
    return selected
