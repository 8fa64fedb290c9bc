"""Bulk and scheduled email delivery with per-recipient tracking."""

__version__ = "0.3.0"
