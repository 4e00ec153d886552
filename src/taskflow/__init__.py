"""
taskflow: task dependency graph + recurrence engine.

Subpackages:
- tasks/: task entities, SQLite store, dependency graph service, lifecycle coordinator
- recurrence/: recurring templates, next-run calculation, generation scheduler
- core/: ports (Protocols), clock, application state
- cli/ + connectors/: composition root and console front end
"""
