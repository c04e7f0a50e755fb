"""
annotask: page-annotation tasks persisted as tasks.json and mirrored into tasks.md.

Subpackages:
- tasks/: Task model, TaskStore (JSON), MarkdownGenerator, intake helpers
- migration/: legacy format parsers + LegacyMigrator (backup/rollback)
- storage/: local-folder implementation of the file capability
- core/: ports (Protocols) and AppState
- cli/: console entry point
"""

__version__ = "0.1.0"
