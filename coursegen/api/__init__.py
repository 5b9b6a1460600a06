"""FastAPI application for coursegen."""
