"""Feature key -> cross-browser support verdict."""
