from .store import StateStore, lease_owner

__all__ = ["StateStore", "lease_owner"]
