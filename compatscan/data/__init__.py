# ============================================================================
# compatscan/data/__init__.py
# Data Layer Package - Storage and Persistence
# ============================================================================
#
# MODULES IN THIS PACKAGE:
# - **db.py**: aiosqlite jobs table
# - **blackbox.py**: serialized background writer for database mutations
# - **job_store.py**: in-memory job cache with write-through and recovery
#
# DATA FLOW:
# Scheduler/pipeline mutate Job -> JobStore.save -> BlackBox queue -> SQLite
#
# ============================================================================
