"""CareSlot: appointment scheduling and slot reconciliation core."""

__version__ = "0.1.0"
