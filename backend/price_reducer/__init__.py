"""eBay price reduction engine with marketplace synchronization."""

__version__ = "0.1.0"
