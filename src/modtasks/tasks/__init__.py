"""
Task lifecycle, persistence and timers.

- **task_manager.py**: In-memory task table, state machine, cancel-condition
  matching and the periodic sweep.
- **task_store.py**: Whole-table snapshot backends (JSON file, SQLite, memory).
- **action_scheduler.py**: One-shot timers per task with cancel and reschedule.
- **clock.py**: Real and virtual clocks the manager and scheduler run on.
"""
