"""HTTP routes for coursegen."""
