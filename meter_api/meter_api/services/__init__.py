"""Request-path and administration services."""
