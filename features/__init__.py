"""
Features package — each sub-package encapsulates a self-contained feature.

Convention:
  features/<feature_name>/
    __init__.py      — public API re-exports
    models.py        — data models specific to this feature
    db.py            — database layer (if applicable)
    store.py         — async persistence port and its backends (if applicable)
    ...              — any other feature-specific modules

Features:
  projects/        — projects, tasks, artifacts and the orchestration core
  dispatch/        — agent dispatch queue and its consumer
  notifications/   — observer connections and event fan-out
"""
