"""Application context: the runtime paths every service is built from.

A plain object rather than a module global, so tests and embedders can run
several instances side by side.
"""

from __future__ import annotations

import os


class AppContext:
    """Holds the runtime directory paths for the application."""

    def __init__(self, *, cwd: str, data_dir: str) -> None:
        self._cwd = cwd
        self._data_dir = data_dir

    @property
    def cwd(self) -> str:
        return self._cwd

    @property
    def data_dir(self) -> str:
        return self._data_dir

    @property
    def meetings_dir(self) -> str:
        return os.path.join(self._data_dir, "meetings")

    @property
    def config_path(self) -> str:
        return os.path.join(self._data_dir, "config.json")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self._cwd, "logs")

    def ensure_dirs(self) -> None:
        for path in (self.data_dir, self.meetings_dir, self.logs_dir):
            os.makedirs(path, exist_ok=True)
