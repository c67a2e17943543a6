"""
Utility functions and helpers for modtasks.

- **logger.py**: Centralized logging configuration with colored console output
  through prompt_toolkit, rotating file handlers and suppression of noisy
  library loggers (Discord internals, aiosqlite).
"""
