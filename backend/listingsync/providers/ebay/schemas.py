"""Typed views over the eBay OAuth and Sell Inventory payloads the sync services consume."""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, AliasPath, BaseModel, ConfigDict, Field, ValidationError, field_validator

from listingsync.providers.ebay.endpoints import ERROR_INVALID_SKU, ERROR_MISSING_LOCALE


def parse_json(text: str) -> Any:
    try:
        return json.loads(text) if text else None
    except ValueError:
        return None


# --------------------------- OAuth ---------------------------


class TokenExchangeOk(BaseModel):
    """Successful authorization-code or refresh-token grant."""

    kind: Literal["ok"] = "ok"
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_token_expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class TokenExchangeError(BaseModel):
    """Anything the token endpoint returned that is not a usable token."""

    kind: Literal["error"] = "error"
    status_code: int
    error: Optional[str] = None
    error_description: Optional[str] = None
    # parsed JSON body, or {"raw": text} when the body was not JSON
    body: Dict[str, Any] = Field(default_factory=dict)


TokenExchangeResult = Union[TokenExchangeOk, TokenExchangeError]


def parse_token_response(status_code: int, text: str) -> TokenExchangeResult:
    data = parse_json(text)
    body = data if isinstance(data, dict) else {"raw": (text or "")[:1000]}
    if 200 <= status_code < 300 and isinstance(data, dict):
        scope = data.get("scope")
        if isinstance(scope, list):
            data = {**data, "scope": " ".join(str(s) for s in scope)}
        try:
            return TokenExchangeOk.model_validate(data)
        except ValidationError:
            pass
    return TokenExchangeError(
        status_code=status_code,
        error=str(body.get("error")) if body.get("error") else None,
        error_description=str(body.get("error_description")) if body.get("error_description") else None,
        body=body,
    )


# --------------------------- errors ---------------------------


class ProviderErrorDetail(BaseModel):
    """One entry of the ``errors`` array on Sell API responses."""

    errorId: Optional[int] = None
    domain: Optional[str] = None
    category: Optional[str] = None
    message: Optional[str] = None
    longMessage: Optional[str] = None

    model_config = ConfigDict(extra="allow")


def provider_errors(text: str) -> List[Dict[str, Any]]:
    """Error objects from a failed response, or a single truncated excerpt when the body is not JSON."""
    data = parse_json(text)
    errs = data.get("errors") if isinstance(data, dict) else None
    if isinstance(errs, list) and errs:
        return [e if isinstance(e, dict) else {"message": str(e)} for e in errs]
    if isinstance(errs, dict):
        return [errs]
    return [{"message": (text or "")[:200] or "unknown_error"}]


def has_error_id(text: str, error_id: int) -> bool:
    data = parse_json(text)
    if isinstance(data, dict) and isinstance(data.get("errors"), list):
        for e in data["errors"]:
            if isinstance(e, dict) and str(e.get("errorId")) == str(error_id):
                return True
        return False
    # unparsable body: fall back to a substring check
    return f'"errorId":{error_id}' in (text or "").replace(" ", "")


def is_missing_locale(status_code: int, text: str) -> bool:
    return status_code == 400 and has_error_id(text, ERROR_MISSING_LOCALE)


def is_invalid_sku(status_code: int, text: str) -> bool:
    return status_code == 400 and has_error_id(text, ERROR_INVALID_SKU)


# --------------------------- bulk_migrate_listing ---------------------------


def _id_str(v: Any) -> Optional[str]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return str(int(v)) if float(v).is_integer() else str(v)
    s = str(v).strip()
    return s or None


def _excerpt(raw: Any, limit: int = 300) -> str:
    try:
        text = json.dumps(raw, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = repr(raw)
    return text[:limit]


class BulkMigrateItemResult(BaseModel):
    """Per-listing entry of a bulk_migrate_listing response; field names vary between payloads."""

    listing_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("listingId", "listingID"))
    sku: Optional[str] = Field(default=None, validation_alias=AliasChoices("sku", AliasPath("inventoryItem", "sku")))
    offer_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("offerId", AliasPath("offer", "offerId"))
    )
    status: Optional[str] = None
    status_code: Optional[int] = Field(default=None, validation_alias=AliasChoices("statusCode", "status_code"))
    errors: Optional[List[Dict[str, Any]]] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("listing_id", "sku", "offer_id", "status", mode="before")
    @classmethod
    def _coerce_str(cls, v: Any) -> Optional[str]:
        if isinstance(v, (dict, list)):
            raise ValueError("expected a scalar")
        return _id_str(v)

    @field_validator("status_code", mode="before")
    @classmethod
    def _coerce_status(cls, v: Any) -> Optional[int]:
        try:
            return int(v) if v is not None else None
        except (TypeError, ValueError):
            return None

    @field_validator("errors", mode="before")
    @classmethod
    def _coerce_errors(cls, v: Any) -> Optional[List[Dict[str, Any]]]:
        if not isinstance(v, list):
            return None
        # plain-string entries become {"message": ...}
        return [e if isinstance(e, dict) else {"message": str(e)} for e in v]

    @property
    def failed(self) -> bool:
        return bool(self.errors)


def _unparsable_item(raw: Any) -> BulkMigrateItemResult:
    listing_id = _id_str(raw.get("listingId") or raw.get("listingID")) if isinstance(raw, dict) else None
    return BulkMigrateItemResult.model_construct(
        listing_id=listing_id,
        sku=None,
        offer_id=None,
        status=None,
        status_code=None,
        errors=[{"message": "unparsable_item_result", "raw": _excerpt(raw)}],
    )


def parse_bulk_migrate_items(text: str) -> List[BulkMigrateItemResult]:
    """
    Itemized results from ``responses`` or ``results``; empty when the provider sent neither.
    An entry that cannot be read is kept as a failed result carrying a raw excerpt.
    """
    data = parse_json(text)
    if not isinstance(data, dict):
        return []
    raw = data.get("responses")
    if not isinstance(raw, list):
        raw = data.get("results")
    if not isinstance(raw, list):
        return []
    items: List[BulkMigrateItemResult] = []
    for r in raw:
        if not isinstance(r, dict):
            items.append(_unparsable_item(r))
            continue
        try:
            items.append(BulkMigrateItemResult.model_validate(r))
        except ValidationError:
            items.append(_unparsable_item(r))
    return items


# --------------------------- inventory / offers ---------------------------


class InventoryItem(BaseModel):
    """Subset of an inventory_item record used for reconciliation."""

    sku: Optional[str] = Field(default=None, validation_alias=AliasChoices("sku", "SKU", "Sku"))
    title: Optional[str] = Field(default=None, validation_alias=AliasPath("product", "title"))
    quantity: Optional[int] = Field(
        default=None, validation_alias=AliasPath("availability", "shipToLocationAvailability", "quantity")
    )

    model_config = ConfigDict(extra="ignore")


class InventoryPage(BaseModel):
    inventoryItems: List[InventoryItem] = Field(default_factory=list)
    total: Optional[int] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class Offer(BaseModel):
    """Subset of an offer record; one SKU may carry several offers (one per marketplace)."""

    offerId: Optional[str] = None
    sku: Optional[str] = None
    listingDescription: Optional[str] = None
    status: Optional[str] = None
    listing_status: Optional[str] = Field(default=None, validation_alias=AliasPath("listing", "listingStatus"))
    price_value: Optional[str] = Field(default=None, validation_alias=AliasPath("pricingSummary", "price", "value"))
    price_currency: Optional[str] = Field(
        default=None, validation_alias=AliasPath("pricingSummary", "price", "currency")
    )
    available_quantity: Optional[int] = Field(default=None, validation_alias="availableQuantity")

    model_config = ConfigDict(extra="ignore")

    @property
    def price_amount(self) -> Optional[Decimal]:
        if self.price_value in (None, ""):
            return None
        try:
            return Decimal(str(self.price_value))
        except InvalidOperation:
            return None


class OfferPage(BaseModel):
    offers: List[Offer] = Field(default_factory=list)
    total: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


# --------------------------- bulk_update_price_quantity ---------------------------


class PriceQuantityResponse(BaseModel):
    """Per-SKU outcome of bulk_update_price_quantity."""

    sku: Optional[str] = None
    offerId: Optional[str] = None
    statusCode: Optional[int] = None
    errors: Optional[List[Dict[str, Any]]] = None
    warnings: Optional[List[Dict[str, Any]]] = None

    model_config = ConfigDict(extra="allow")

    @property
    def failed(self) -> bool:
        if self.errors:
            return True
        return self.statusCode is not None and not (200 <= self.statusCode < 300)


def parse_price_quantity_responses(text: str) -> List[PriceQuantityResponse]:
    data = parse_json(text)
    raw = data.get("responses") if isinstance(data, dict) else None
    if not isinstance(raw, list):
        return []
    return [PriceQuantityResponse.model_validate(r) for r in raw if isinstance(r, dict)]


# --------------------------- fulfillment orders ---------------------------


class OrderLine(BaseModel):
    """One purchased line of a Fulfillment order."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    line_id: str
    sku: str
    quantity: int


class OrderPage(BaseModel):
    lines: List[OrderLine] = Field(default_factory=list)
    next: Optional[str] = None
    total: Optional[int] = None


def _first_text(d: Dict[str, Any], *keys: str) -> str:
    for k in keys:
        v = d.get(k)
        if v is not None and not isinstance(v, (dict, list, bool)):
            s = str(v).strip()
            if s:
                return s
    return ""


def _positive_int(*values: Any) -> int:
    for v in values:
        try:
            n = int(v)
        except (TypeError, ValueError):
            continue
        if n > 0:
            return n
    return 0


def parse_order_page(text: str) -> OrderPage:
    """
    Lines from ``orders[].lineItems`` (or ``lineItemSummaries``). Lines missing an
    order id, line id or SKU, or with a non-positive quantity, are dropped.
    """
    data = parse_json(text)
    if not isinstance(data, dict):
        return OrderPage()
    lines: List[OrderLine] = []
    orders = data.get("orders") if isinstance(data.get("orders"), list) else []
    for order in orders:
        if not isinstance(order, dict):
            continue
        order_id = _first_text(order, "orderId", "order_id", "id")
        raw_lines = order.get("lineItems")
        if not isinstance(raw_lines, list):
            raw_lines = order.get("lineItemSummaries")
        if not isinstance(raw_lines, list):
            continue
        for li in raw_lines:
            if not isinstance(li, dict):
                continue
            line_id = _first_text(li, "lineItemId", "lineItemIdValue")
            sku = _first_text(li, "sku", "legacySku", "lineItemSku")
            qty = _positive_int(li.get("quantity"), li.get("quantityPurchased"))
            if not order_id or not line_id or not sku or qty <= 0:
                continue
            lines.append(OrderLine(order_id=order_id, line_id=line_id, sku=sku, quantity=qty))
    nxt = data.get("next")
    total = data.get("total")
    return OrderPage(
        lines=lines,
        next=nxt if isinstance(nxt, str) and nxt else None,
        total=total if isinstance(total, int) else None,
    )
