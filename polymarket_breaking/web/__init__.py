"""HTTP surface for the breaking-markets functions."""

from polymarket_breaking.web.server import WebServer

__all__ = [
    "WebServer",
]
