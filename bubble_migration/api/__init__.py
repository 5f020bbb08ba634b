"""HTTP report endpoints."""
