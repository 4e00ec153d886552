"""
Task subsystem.

Components:
- task_models.py: data structures (Project, Task, TaskStatus, dependency views)
- task_store.py: SQLite-backed storage for projects, tasks and dependency edges
- dependency_graph.py: cycle-safe edge management and blocked/chain queries
- lifecycle.py: status gate, field updates, acknowledgment, archiving
"""
