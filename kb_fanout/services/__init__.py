"""Event processing services."""
