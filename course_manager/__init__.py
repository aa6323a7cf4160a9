"""Course Manager application package."""
