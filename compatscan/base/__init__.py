"""Foundational pieces: configuration and the cancellation token."""
#
# WHAT'S IN THIS MODULE:
# - config.py: frozen dataclass settings loaded from COMPATSCAN_* variables
# - cancellation.py: cooperative cancellation token shared by scheduler and pipeline
#
