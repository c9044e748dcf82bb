from foreman.state.store import JsonStateStore, utcnow_iso

__all__ = ["JsonStateStore", "utcnow_iso"]
