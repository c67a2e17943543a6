"""
Discord integration for modtasks.

- **action_executor.py**: Applies task actions (timeout, ban, kick, warn)
  through py-cord and DMs the target.
- **cogs/task_listener.py**: Message listener and the ``/schedule``,
  ``/tasks`` and ``/task_cancel`` slash commands.
"""
