"""keymeter operator CLI."""
