"""
Legacy format migration.

- legacy_parsers.py: pure parsers for the stream / summary / detailed formats
- converter.py: one LegacyAnnotation -> Task converter for every format
- migrator.py: LegacyMigrator (detect, back up, write, validate, roll back)
"""
