from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import fcntl
from typing import Any, Dict

import yaml

from modtasks.util.logger import get_logger

logger = get_logger("app_configuration")


CONFIG_PATH = Path("./config/app_config.yml").resolve()

# Reference cadence and retention for the task subsystem.
DEFAULT_SWEEP_INTERVAL_SECONDS = 10.0
DEFAULT_TERMINAL_RETENTION_HOURS = 24.0
DEFAULT_SCHEDULER_RECORD_RETENTION_SECONDS = 60.0
DEFAULT_MONITORING_DURATION_SECONDS = 300.0
DEFAULT_MIN_CONFIDENCE = 50
DEFAULT_STORE_BACKEND = "json"
DEFAULT_STORE_PATH = "./data/tasks/active_tasks.json"


@dataclass(slots=True)
class TaskSettings:
    """Tunable parameters of the task subsystem.

    Every field has a module-level default so components can be constructed
    without a configuration file (tests do exactly that).
    """

    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    terminal_retention_hours: float = DEFAULT_TERMINAL_RETENTION_HOURS
    scheduler_record_retention_seconds: float = DEFAULT_SCHEDULER_RECORD_RETENTION_SECONDS
    default_monitoring_duration_seconds: float = DEFAULT_MONITORING_DURATION_SECONDS
    min_confidence: int = DEFAULT_MIN_CONFIDENCE
    store_backend: str = DEFAULT_STORE_BACKEND
    store_path: str = DEFAULT_STORE_PATH

    @property
    def terminal_retention_seconds(self) -> float:
        return self.terminal_retention_hours * 3600.0

    @property
    def default_monitoring_duration_ms(self) -> int:
        return int(self.default_monitoring_duration_seconds * 1000)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any] | None) -> "TaskSettings":
        """Build settings from the ``tasks`` section of the YAML file.

        Unknown keys are ignored and malformed values fall back to the
        defaults with a warning, so a typo never prevents startup.
        """
        settings = cls()
        if not isinstance(data, dict):
            return settings

        numeric_fields = {
            "sweep_interval_seconds": float,
            "terminal_retention_hours": float,
            "scheduler_record_retention_seconds": float,
            "default_monitoring_duration_seconds": float,
            "min_confidence": int,
        }
        for key, caster in numeric_fields.items():
            if key not in data:
                continue
            try:
                value = caster(data[key])
            except (TypeError, ValueError):
                logger.warning("[APP CONFIGURATION] Invalid value for tasks.%s: %r", key, data[key])
                continue
            if value < 0:
                logger.warning("[APP CONFIGURATION] Negative value for tasks.%s ignored", key)
                continue
            setattr(settings, key, value)

        backend = str(data.get("store_backend", settings.store_backend)).lower()
        if backend in ("json", "sqlite", "memory"):
            settings.store_backend = backend
        else:
            logger.warning("[APP CONFIGURATION] Unknown store backend %r, using %s", backend, settings.store_backend)

        if data.get("store_path"):
            settings.store_path = str(data["store_path"])

        return settings


class AppConfig:
    """File-lock based accessor around the YAML application configuration.

    The class caches the contents of ``./config/app_config.yml`` and exposes
    the task settings through :class:`TaskSettings`. Reads take an fcntl shared
    lock so an operator editing the file never hands us a half-written mapping.
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self._data: Dict[str, Any] = {}
        self.reload()

    # --------------------------
    # Private helpers
    # --------------------------
    def load_from_disk(self) -> Dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                data = yaml.safe_load(f)
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
                return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            logger.warning("[APP CONFIGURATION] Config file %s not found, using defaults.", self.config_path)
        except Exception as exc:
            logger.error("[APP CONFIGURATION] Failed to load config %s: %s", self.config_path, exc)
        return {}

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> Dict[str, Any]:
        """Re-read the YAML file and return the loaded mapping (empty on error)."""
        self._data = self.load_from_disk()
        return self._data

    @property
    def data(self) -> Dict[str, Any]:
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    # --------------------------
    # High-level shortcuts
    # --------------------------
    @property
    def task_settings(self) -> TaskSettings:
        """Return the ``tasks`` section parsed into :class:`TaskSettings`."""
        return TaskSettings.from_mapping(self._data.get("tasks"))

    @property
    def moderator_permission(self) -> str:
        """Guild permission a member needs to schedule or cancel tasks."""
        bot_section = self._data.get("bot", {})
        if isinstance(bot_section, dict):
            return str(bot_section.get("moderator_permission", "moderate_members"))
        return "moderate_members"


# Shared application-wide configuration instance
app_config = AppConfig(CONFIG_PATH)
