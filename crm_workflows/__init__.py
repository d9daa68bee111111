"""Event-driven workflow automation for CRM records."""

__version__ = "1.0.0"
