"""
Task subsystem.

Components:
- task_models.py: data structures (Task, TaskStatus, BoundingRect)
- task_store.py: JSON-file storage + CRUD with deduplication
- markdown.py: deterministic tasks -> markdown renderer and file writer
- task_api.py: small high-level helpers used by the capture layer and CLI
"""
