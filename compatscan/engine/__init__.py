"""Job execution: admission control, the stage pipeline and its collaborators."""
#
# MODULES IN THIS PACKAGE:
# - **models.py**: Job, stages, baseline entries
# - **scheduler.py**: FIFO queue + bounded active set
# - **pipeline.py**: Queued -> Acquire -> Analyze -> Synthesize -> Done
# - **workspace.py**: clone / unpack / local path acquisition
# - **walker.py**: eligible file discovery (.gitignore, LFS, size cap)
# - **analyzers.py**: per-extension feature detection
# - **synthesis.py**: environment / architecture / security snapshots and the final result
#
