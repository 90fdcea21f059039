"""keymeter API: credential gate, quota ledger and reconciler jobs."""

__version__ = "0.4.0"
