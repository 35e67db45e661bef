# ============================================================================
# compatscan/__init__.py
# compatscan - Browser Compatibility Scan Orchestrator
# ============================================================================
#
# PURPOSE:
# Runs "scan" jobs over web projects under bounded parallelism and
# classifies every detected feature against cross-browser support data.
#
# PACKAGE MAP:
# - base/     configuration, cancellation tokens
# - cortex/   lifecycle event bus
# - data/     SQLite persistence and the job cache
# - engine/   scheduler, pipeline, workspace, walker, analyzers
# - compat/   feature -> support verdict resolver
# - ai/       modernization suggestions
# - server/   FastAPI surface
#
# ============================================================================

__version__ = "0.1.0"
