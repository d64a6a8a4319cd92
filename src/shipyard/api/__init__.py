"""API routers for the trigger service."""
