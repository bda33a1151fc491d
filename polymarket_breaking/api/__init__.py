"""Gamma API client."""

from polymarket_breaking.api.client import GammaAPIError, GammaClient

__all__ = ["GammaAPIError", "GammaClient"]
