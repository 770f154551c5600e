"""Passkey-gated site access with an append-only audit log."""

__version__ = "1.0.0"
