"""
Crawl Record Models

Types exchanged between crawlers, the cache layer and the reconciler:

- StoreInfo: one store's identity and location as published by a chain
- PriceRecord: one normalized price observation
- RawPriceRow: one unparsed row of a delimited price list, kept verbatim in the cache
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, field_validator, model_validator


def normalize_barcode(barcode: Optional[str], product_code: str) -> str:
    """Substitute a synthetic barcode derived from the product code when blank"""
    if barcode is None or not barcode.strip():
        return "_" + product_code
    return barcode.strip()


def is_synthetic_barcode(barcode: str) -> bool:
    return barcode.startswith("_")


@dataclass(frozen=True)
class StoreInfo:
    """
    Store identity as published by a chain.

    Equality and hashing use (chain, code) only, so address metadata can be
    refreshed without changing the store's identity.
    """
    chain: str
    code: str
    name: Optional[str] = field(default=None, compare=False)
    street_address: Optional[str] = field(default=None, compare=False)
    postal_code: Optional[str] = field(default=None, compare=False)
    city: Optional[str] = field(default=None, compare=False)

    @property
    def full_address(self) -> str:
        parts = [self.street_address, " ".join(p for p in (self.postal_code, self.city) if p)]
        return ", ".join(p for p in parts if p)


@dataclass(frozen=True)
class StoreSnapshotKey:
    """Identifies one cached/crawled unit"""
    chain: str
    store_code: str
    date: date

    @property
    def cache_key(self) -> str:
        return f"{self.store_code}-{self.date:%Y-%m-%d}"


class PriceRecord(BaseModel):
    """
    Normalized price observation for one product in one store.

    Numeric fields are nullable: None means "not published", never zero.
    """
    product_code: str
    barcode: str = ""
    name: str = ""
    brand: Optional[str] = None
    uom: Optional[str] = None
    quantity: Optional[str] = None
    price: Optional[Decimal] = None
    price_per_unit: Optional[Decimal] = None
    special_price: Optional[Decimal] = None
    best_price_30: Optional[Decimal] = None
    anchor_price: Optional[Decimal] = None

    @field_validator("product_code", "barcode", "name", mode="before")
    @classmethod
    def strip_required(cls, v: Optional[str]) -> str:
        return (v or "").strip()

    @field_validator("brand", "uom", "quantity", mode="before")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @model_validator(mode="after")
    def synthesize_barcode(self) -> "PriceRecord":
        self.barcode = normalize_barcode(self.barcode, self.product_code)
        return self


class RawPriceRow(BaseModel):
    """Verbatim price list row; every field is text as published."""
    product_code: str = ""
    barcode: str = ""
    name: str = ""
    brand: str = ""
    uom: str = ""
    quantity: str = ""
    price: str = ""
    price_per_unit: str = ""
    special_price: str = ""
    best_price_30: str = ""
    anchor_price: str = ""


# Crawler output consumed by the reconciler
CrawlResult = Dict[StoreInfo, List[PriceRecord]]
