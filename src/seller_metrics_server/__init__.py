"""eBay order sync and credential lifecycle for seller bookkeeping."""

__version__ = "0.1.0"
