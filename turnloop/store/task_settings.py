"""Task-settings resolver: global default plus per-task overrides."""

import threading

from turnloop.config import Config, get_config


class TaskSettingsResolver:
    """Answers whether autonomous iteration is enabled for a task."""

    def __init__(self, config: Config | None = None):
        self._config = config
        self._lock = threading.Lock()
        self._autonomy: dict[str, bool] = {}

    @property
    def default_autonomy(self) -> bool:
        return bool((self._config or get_config()).ralph.enabled)

    def set_autonomy(self, task_id: str, enabled: bool | None) -> None:
        """Override autonomy for one task; ``None`` falls back to the default."""
        with self._lock:
            if enabled is None:
                self._autonomy.pop(task_id, None)
            else:
                self._autonomy[task_id] = bool(enabled)

    def is_autonomy_enabled(self, task_id: str) -> bool:
        with self._lock:
            override = self._autonomy.get(task_id)
        if override is not None:
            return override
        return self.default_autonomy
