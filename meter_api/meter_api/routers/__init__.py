"""API routers for keymeter."""
