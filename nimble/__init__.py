"""Nimble: block-level mod repository synchronization client."""

__version__ = "0.2.0"
