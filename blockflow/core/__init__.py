"""Core layer - identifier and value validation, query building, schema
handling, the execution engine and the job queue."""
