"""Local execution agent for backend work items."""

__version__ = "0.1.0"
