"""
Recurrence subsystem.

Components:
- rules.py: RecurrencePattern, RecurrenceConfig and compute_next_generation()
- template_models.py: RecurringTemplate and generation reports
- template_store.py: SQLite-backed template storage with claim/release
- recurrence_scheduler.py: template operations, generation runs, polling driver
"""
