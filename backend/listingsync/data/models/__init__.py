# listingsync/data/models/__init__.py
from __future__ import annotations

from listingsync.data.models.catalog import Product
from listingsync.data.models.listings import ListingIgnore, ListingMapping, MarketplaceListing
from listingsync.data.models.marketplace import MarketplaceAccount, OAuthToken, ProviderAppCredential
from listingsync.data.models.orders import MarketplaceOrderProcessed
from listingsync.data.models.sync_logs import SyncLog

__all__ = [
    "ListingIgnore",
    "ListingMapping",
    "MarketplaceAccount",
    "MarketplaceListing",
    "MarketplaceOrderProcessed",
    "OAuthToken",
    "Product",
    "ProviderAppCredential",
    "SyncLog",
]
