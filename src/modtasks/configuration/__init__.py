"""
Configuration management for modtasks.

- **app_configuration.py**: YAML application configuration (``config/app_config.yml``)
  with typed access to the ``tasks`` section through ``TaskSettings``.
"""
