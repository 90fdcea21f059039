"""keymeter core: key hashing, usage periods and the persistent state store."""

__version__ = "0.4.0"
