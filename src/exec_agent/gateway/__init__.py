"""Backend gateway implementations."""
