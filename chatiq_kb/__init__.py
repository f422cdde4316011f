"""Site discovery and grounded retrieval for ChatIQ bots."""

__version__ = "0.1.0"
