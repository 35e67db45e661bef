# ============================================================================
# compatscan/server/__init__.py
# Server Package - FastAPI Web Server
# ============================================================================
#
# PURPOSE:
# HTTP surface over the scheduler: submit scans, poll status and results,
# cancel or remove jobs, and stream lifecycle events over SSE.
#
# KEY MODULES:
# - **api.py**: FastAPI application, lifespan and error handlers
# - **state.py**: runtime wiring (config, bus, store, resolver, scheduler)
# - **routers/**: scans, jobs and realtime endpoints
#
# ============================================================================
