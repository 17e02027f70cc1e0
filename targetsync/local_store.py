"""
Local agent store: the per-agent copy of the target list plus the id of
the last remote command this agent applied.

Backed by a JSON file + filelock so a CLI invocation (e.g. marking a target
from the shell) and a running agent never interleave a read-modify-write.

File structure:
{
  "targets":       {"id:42": {"displayName": "Foo"}, ...},
  "lastCommandId": "1718000000000-abc123"
}
"""

import json
import logging
import os

from filelock import FileLock

from targetsync.normalize import normalize_targets

logger = logging.getLogger("targetsync")


class LocalStore:
    """
    Thread/process-safe local state via a JSON file + filelock.

    Args:
        filepath: Path to the local state JSON file.
    """

    def __init__(self, filepath: str):
        self._filepath = filepath
        self._lock = FileLock(filepath + ".lock", timeout=30)

    @property
    def filepath(self) -> str:
        return self._filepath

    # ── Public API ────────────────────────────────────────────────────────

    def load_targets(self) -> dict:
        with self._lock:
            data = self._read()
        return normalize_targets(data.get("targets"))

    def save_targets(self, targets: dict) -> dict:
        """Replace the local target list; returns the normalized copy written."""
        normalized = normalize_targets(targets)
        with self._lock:
            data = self._read()
            data["targets"] = normalized
            self._write(data)
        return normalized

    def last_command_id(self) -> str:
        with self._lock:
            data = self._read()
        return str(data.get("lastCommandId") or "")

    def set_last_command_id(self, command_id: str) -> None:
        with self._lock:
            data = self._read()
            data["lastCommandId"] = command_id
            self._write(data)

    # ── Private helpers ───────────────────────────────────────────────────

    def _read(self) -> dict:
        """Read and return the local data. Caller holds lock."""
        if not os.path.exists(self._filepath):
            return {}
        try:
            with open(self._filepath, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            logger.warning("Local state file corrupt or unreadable, starting fresh")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        """Write local data atomically. Caller holds lock."""
        tmp = self._filepath + ".tmp"
        try:
            directory = os.path.dirname(self._filepath)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self._filepath)
        except OSError as e:
            logger.warning(f"Failed to write local state file: {e}")
            try:
                os.unlink(tmp)
            except OSError:
                pass
