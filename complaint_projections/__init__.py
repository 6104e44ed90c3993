"""Event-driven CQRS projection engine for multi-tenant complaint management."""

__version__ = "0.1.0"
