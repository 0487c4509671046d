# listingsync/features/marketplaces/schemas.py
from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


# ---------- accounts ----------
class AccountItem(BaseModel):
    id: int
    display_name: Optional[str] = None
    environment: str
    provider_account_id: Optional[str] = None
    needs_reauth: bool = False


class AccountsResp(BaseModel):
    items: list[AccountItem]


# ---------- listings ----------
class ListingItem(BaseModel):
    remote_id: str
    remote_sku: Optional[str] = None
    title: str = ""
    price_amount: Optional[float] = None
    price_currency: Optional[str] = None
    listing_status: Optional[str] = None
    product_id: Optional[int] = None
    sync_status: str
    is_mapped: bool
    qty_remote: Optional[int] = None
    qty_app: Optional[int] = None


class ListingsResp(BaseModel):
    items: list[ListingItem]
    total: int
    page: int
    page_size: int
    remote_total: int
    processed_skus: int
    skipped_skus: int


class SnapshotResp(BaseModel):
    saved: int
    remote_total: int
    skipped_skus: int


# ---------- mapping actions ----------
class _RemoteRef(BaseModel):
    remote_id: Optional[str] = Field(default=None, max_length=128)
    remote_sku: Optional[str] = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _one_ref(self):
        if not (self.remote_id or "").strip() and not (self.remote_sku or "").strip():
            raise ValueError("remote_id or remote_sku is required")
        return self


class LinkAction(_RemoteRef):
    action: Literal["link"]
    product_id: int = Field(ge=1)


class LinkBySkuAction(BaseModel):
    action: Literal["link_by_sku"]
    remote_sku: str = Field(min_length=1, max_length=128)
    remote_id: Optional[str] = Field(default=None, max_length=128)


class BulkLinkItem(BaseModel):
    remote_sku: Optional[str] = Field(default=None, max_length=128)
    remote_id: Optional[str] = Field(default=None, max_length=128)


class BulkLinkBySkuAction(BaseModel):
    action: Literal["bulk_link_by_sku"]
    items: list[BulkLinkItem] = Field(min_length=1, max_length=500)
    dry_run: bool = False


class CreateAction(_RemoteRef):
    action: Literal["create"]


class IgnoreAction(_RemoteRef):
    action: Literal["ignore"]
    reason: str = Field(default="manual_ignore", max_length=64)


MappingAction = Annotated[
    Union[LinkAction, LinkBySkuAction, BulkLinkBySkuAction, CreateAction, IgnoreAction],
    Field(discriminator="action"),
]


# ---------- stock ----------
class StockItem(BaseModel):
    sku: str = Field(min_length=1, max_length=128)
    quantity: int = Field(ge=0)


class StockItemsResp(BaseModel):
    items: list[StockItem]


class StockPushReq(BaseModel):
    items: list[StockItem] = Field(default_factory=list)


class SyncProductsReq(BaseModel):
    product_ids: list[int] = Field(min_length=1, max_length=1000)
