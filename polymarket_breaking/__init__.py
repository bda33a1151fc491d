"""Breaking markets: sync Gamma prices, rank movers, and mail the newsletter."""

__version__ = "0.1.0"
