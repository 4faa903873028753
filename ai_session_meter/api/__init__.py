"""Local HTTP status endpoint."""
