"""On-disk encoding of the task repository.

The store file is a single JSON document::

    {"version": 1, "tasks": [...], "features": [...]}

Loading never crashes on a missing or corrupted file; it degrades to an empty
repository. Loading a file written by a newer, unknown schema fails closed
with :class:`~shepherd.errors.MigrationError` so its data is never silently
dropped. Saving goes through a temporary file and ``os.replace`` so readers
only ever see a complete document.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict

from .errors import MigrationError, PersistenceError
from .models import SCHEMA_VERSION, Repository

logger = logging.getLogger("shepherd.persistence")


def _migrate_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Version 0: a bare ``{"tasks": [...]}`` file without features."""
    return {"version": 1, "tasks": data.get("tasks", []), "features": data.get("features", [])}


# Upgrades from an older version to the next one
MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    0: _migrate_legacy,
}


def migrate(data: Dict[str, Any]) -> Dict[str, Any]:
    """Bring a decoded document up to :data:`SCHEMA_VERSION`."""
    version = data.get("version", 0)
    if isinstance(version, bool) or not isinstance(version, int):
        raise MigrationError(f"Unrecognized task store version {version!r}")
    while version != SCHEMA_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise MigrationError(
                f"Task store version {version} is not supported (this build reads version {SCHEMA_VERSION})"
            )
        data = step(data)
        version = data["version"]
    return data


class TaskFile:
    """Load and save a :class:`Repository` at ``path``."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    @property
    def temp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    def load(self) -> Repository:
        """Read the repository, or return an empty one for a missing/corrupt file."""
        if not self.path.exists():
            logger.info(f"No task store at {self.path}; starting empty")
            return Repository()

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Task store {self.path} is unreadable ({e}); starting empty")
            return Repository()

        if not isinstance(data, dict):
            logger.warning(f"Task store {self.path} is not a JSON object; starting empty")
            return Repository()

        data = migrate(data)
        try:
            repository = Repository.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Task store {self.path} has malformed entries ({e}); starting empty")
            return Repository()

        issues = repository.validate()
        if issues:
            logger.warning(f"Task store {self.path} has invalid entries ({'; '.join(issues)}); starting empty")
            return Repository()
        return repository

    def save(self, repository: Repository) -> None:
        """Atomically replace the file with ``repository``."""
        payload = json.dumps(repository.to_dict(), indent=2, ensure_ascii=False) + "\n"
        tmp_path = self.temp_path
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                logger.debug(f"Could not remove {tmp_path}")
            raise PersistenceError(f"Failed to save task store to {self.path}: {e}") from e
        logger.debug(f"Saved {len(repository.tasks)} tasks to {self.path}")
