"""eBay payload -> domain transformers."""

from seller_metrics_server.transformers.order import OrderTransformer, RemoteOrder

__all__ = ["OrderTransformer", "RemoteOrder"]
