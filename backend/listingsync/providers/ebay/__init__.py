from listingsync.providers.ebay.client import EbayClient

__all__ = ["EbayClient"]
