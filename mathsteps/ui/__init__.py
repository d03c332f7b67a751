"""Client-side helpers for the REST API."""
