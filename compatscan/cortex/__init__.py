# ============================================================================
# compatscan/cortex/__init__.py
# Cortex Package - Lifecycle Events
# ============================================================================
#
# PURPOSE:
# Typed job lifecycle events and the in-process bus that fans them out to
# pollers, SSE streams and tests.
#
# ============================================================================
