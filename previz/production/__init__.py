"""
Pre-production core: script decomposition, character identity locking,
actor training jobs, usage accounting and frame versioning.

SQLite (production/store.py) is the source of truth; every service here is a
thin dataclass over a shared StudioStore.
"""
