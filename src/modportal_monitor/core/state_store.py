"""Durable JSON state with atomic writes."""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from modportal_monitor.core.errors import StateCorruptedError
from modportal_monitor.core.interfaces import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ReadResult:
    """Outcome of a retried JSON read."""

    value: Any = None
    found: bool = False
    attempts: int = 0
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def read_json_with_retry(
    path: Path,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
) -> ReadResult:
    """Read a JSON file, retrying with exponential backoff on bad content.

    A half-written file from a concurrent writer parses badly for a moment;
    anything that still fails after ``max_attempts`` is reported in
    ``ReadResult.error``.
    """
    result = ReadResult()
    for attempt in range(max_attempts):
        result.attempts = attempt + 1
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            result.error = None
            return result
        except OSError as e:
            result.error = e
        else:
            try:
                result.value = json.loads(text)
                result.found = True
                result.error = None
                return result
            except json.JSONDecodeError as e:
                result.error = e

        if attempt < max_attempts - 1:
            delay = initial_delay * (2 ** attempt)
            logger.warning("Bad JSON read of %s, retrying after %.1fs", path, delay)
            time.sleep(delay)

    return result


def write_json_atomic(path: Path, value: Any) -> None:
    """Write JSON to a temp file in the same directory, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(value, f, indent=4, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonStateStore(StateStore):
    """Stores each key as ``<key>.json`` under one directory."""

    def __init__(self, directory: Path, max_attempts: int = 3, initial_delay: float = 1.0) -> None:
        self.directory = directory
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def read(self, key: str, default: Any = None) -> Any:
        """Read ``key``, or ``default`` when it has never been written.

        Raises:
            StateCorruptedError: if the stored value stays unreadable
        """
        path = self.path_for(key)
        result = read_json_with_retry(path, self.max_attempts, self.initial_delay)
        if not result.ok:
            raise StateCorruptedError(
                f"Could not read {path} after {result.attempts} attempts: {result.error}"
            )
        if not result.found:
            return default
        return result.value

    def write(self, key: str, value: Any) -> None:
        write_json_atomic(self.path_for(key), value)
