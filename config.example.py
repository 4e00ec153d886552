# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Every key has a default, so an empty environment gives a working local setup.

This file exists to make the repo self-documenting even without opening .env.
"""

ENV_VARS = {
    # App / logging
    "TASKFLOW_APP_NAME": "App display name (default: taskflow).",
    "TASKFLOW_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Front ends
    "TASKFLOW_CONSOLE_ENABLED": "Run the interactive console (true/false, default: true).",
    # Paths (gitignored)
    "TASKFLOW_DATA_DIR": "Local data directory for the database and taskflow.log (default: .local/taskflow).",
    "TASKFLOW_DB_PATH": "SQLite database path (default: <data_dir>/taskflow.sqlite3).",
    # Recurrence
    "TASKFLOW_TIMEZONE": "IANA zone used for recurrence times of day (default: UTC).",
    "TASKFLOW_SCHEDULER_ENABLED": "Run the background generation loop (true/false, default: true).",
    "TASKFLOW_SCHEDULER_INTERVAL_SECONDS": "Seconds between generation runs (default: 60).",
    "TASKFLOW_SCHEDULER_BATCH_LIMIT": "Max templates generated per run (default: 64).",
    # Housekeeping
    "TASKFLOW_ARCHIVE_AFTER_DAYS": "Default age in days for /archive of completed tasks (default: 7).",
}
