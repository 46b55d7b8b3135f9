"""forgetter: request-scoped erasure of user identities."""

__version__ = "0.1.0"
