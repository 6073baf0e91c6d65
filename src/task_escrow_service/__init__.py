"""Task Escrow Service - custody ledger for a peer-to-peer task marketplace."""

__version__ = "0.1.0"
