"""
Shared state store: the authoritative SyncState plus its on-disk copy.

The persisted file has this structure:
{
  "targets":          {"id:42": {"displayName": "Foo"}, ...},
  "updatedAt":        <ms>,
  "control":          {commandId, action, ...} | null,
  "controlUpdatedAt": <ms>,
  "activity":         {"players": {...}, "buckets": {...}, "updatedAt": <ms>},
  "sharedCoords":     {"id:42": ["1:2:3", ...]},
  "lock":             {ownerId, ownerLabel, token, ...} | null
}

Every mutation goes through apply_update() under one mutex: the update is
staged on a copy, written with temp file + os.replace, and only then
becomes the live state. A reader of the file never sees a partial write
and a failed write leaves the previous state in place.
"""

import json
import logging
import os
import threading

from targetsync import lease_lock
from targetsync.merge import activity_summary, empty_activity, merge_activity, merge_shared_coordinates
from targetsync.normalize import (
    looks_like_target_map,
    normalize_control_command,
    normalize_coords_batch,
    normalize_observation_batch,
    normalize_targets,
    safe_number,
)
from targetsync.utils import now_ms

logger = logging.getLogger("sync_server")

UPDATE_KEYS = ("targets", "control", "activityBatch", "coordsBatch", "lockCommand")


class PersistenceError(Exception):
    """The atomic write of the state file failed."""


class EmptyUpdateError(ValueError):
    """An update envelope carried none of the recognized keys."""


def empty_state() -> dict:
    return {
        "targets":          {},
        "updatedAt":        0,
        "control":          None,
        "controlUpdatedAt": 0,
        "activity":         empty_activity(),
        "sharedCoords":     {},
        "lock":             None,
    }


def _restore_state(raw) -> dict:
    """Rebuild a state dict from a parsed file, dropping anything malformed."""
    state = empty_state()
    if not isinstance(raw, dict):
        return state
    state["targets"] = normalize_targets(raw.get("targets"))
    state["updatedAt"] = safe_number(raw.get("updatedAt"), 0)
    state["control"] = normalize_control_command(raw.get("control"))
    state["controlUpdatedAt"] = safe_number(raw.get("controlUpdatedAt"), 0)

    activity = raw.get("activity")
    if isinstance(activity, dict):
        players = activity.get("players")
        buckets = activity.get("buckets")
        state["activity"] = {
            "players":   {k: v for k, v in players.items() if isinstance(v, dict)} if isinstance(players, dict) else {},
            "buckets":   {k: v for k, v in buckets.items() if isinstance(v, dict)} if isinstance(buckets, dict) else {},
            "updatedAt": safe_number(activity.get("updatedAt"), 0),
        }

    state["sharedCoords"] = merge_shared_coordinates({}, normalize_coords_batch(raw.get("sharedCoords")))

    lock = raw.get("lock")
    if isinstance(lock, dict) and lock.get("ownerId") and lock.get("token"):
        state["lock"] = dict(lock)
    return state


class SyncStateStore:
    """
    Owns the single SyncState instance for the server process.

    Args:
        filepath: Path of the JSON snapshot file.
        clock:    Callable returning epoch milliseconds (injectable for tests).
    """

    def __init__(self, filepath: str, clock=now_ms):
        self._filepath = filepath
        self._clock = clock
        self._lock = threading.Lock()
        self._state = empty_state()

    @property
    def filepath(self) -> str:
        return self._filepath

    # ── Persistence ───────────────────────────────────────────────────────

    def load(self) -> dict:
        """
        Load the snapshot from disk into memory and return it.

        Missing, empty or corrupt files all yield a fresh empty state; a
        corrupt file is logged, never raised.
        """
        state = empty_state()
        if os.path.exists(self._filepath):
            try:
                with open(self._filepath, "r", encoding="utf-8") as f:
                    raw = f.read()
                if raw.strip():
                    state = _restore_state(json.loads(raw))
            except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not load {self._filepath}: {e}, starting empty")
                state = empty_state()
        with self._lock:
            self._state = state
        return state

    def persist(self) -> None:
        """Write the current in-memory state to disk."""
        with self._lock:
            self._write(self._state)

    def reset(self) -> None:
        """Wipe all sync state (fresh start) and persist the empty snapshot."""
        with self._lock:
            fresh = empty_state()
            self._write(fresh)
            self._state = fresh
        logger.info("STATE RESET: all sync data cleared")

    def _write(self, state: dict) -> None:
        """Write state atomically (temp file + rename). Caller holds lock."""
        tmp = self._filepath + ".tmp"
        try:
            directory = os.path.dirname(self._filepath)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
            os.replace(tmp, self._filepath)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to write state file {self._filepath}: {e}")
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise PersistenceError(str(e)) from e

    # ── Reads ─────────────────────────────────────────────────────────────

    def snapshot(self, include_log: bool = False) -> dict:
        """Public view of the state. Never includes the lock token."""
        now = self._clock()
        with self._lock:
            return self._public(self._state, now, include_log)

    @staticmethod
    def _public(state: dict, now: int, include_log: bool) -> dict:
        view = {
            "targets":          dict(state["targets"]),
            "updatedAt":        state["updatedAt"],
            "control":          state["control"],
            "controlUpdatedAt": state["controlUpdatedAt"],
            "lock":             lease_lock.public_view(state["lock"], now),
            "activitySummary":  activity_summary(state["activity"], state["sharedCoords"]),
        }
        if include_log:
            view["activityLog"] = dict(state["activity"]["buckets"])
        return view

    # ── Writes ────────────────────────────────────────────────────────────

    def apply_update(self, envelope: dict, include_log: bool = False) -> dict:
        """
        Apply a partial update envelope and return the resulting snapshot.

        Each recognized key is applied independently; a malformed
        sub-command is skipped without affecting the others. Raises
        EmptyUpdateError when no recognized key is present and
        PersistenceError when the new state could not be written.
        """
        if not isinstance(envelope, dict):
            raise EmptyUpdateError("update body must be a JSON object")

        if not any(key in envelope for key in UPDATE_KEYS):
            if looks_like_target_map(envelope):
                envelope = {"targets": envelope}
            else:
                raise EmptyUpdateError("no recognized update keys")

        now = self._clock()
        with self._lock:
            staged = dict(self._state)
            changed = False
            lock_result = None

            if "targets" in envelope:
                changed |= self._apply_targets(staged, envelope, now)
            if "control" in envelope:
                changed |= self._apply_control(staged, envelope, now)
            if "activityBatch" in envelope:
                changed |= self._apply_activity(staged, envelope, now)
            if "coordsBatch" in envelope:
                changed |= self._apply_coords(staged, envelope)
            if "lockCommand" in envelope:
                outcome = lease_lock.apply_lock_command(staged["lock"], envelope["lockCommand"], now)
                if outcome.changed:
                    staged["lock"] = outcome.record
                    changed = True
                lock_result = outcome.to_result(now)
                op = envelope["lockCommand"].get("op", "?") if isinstance(envelope["lockCommand"], dict) else "?"
                logger.info(f"LOCK          {op} -> {outcome.status}")

            if changed:
                self._write(staged)
                self._state = staged

            view = self._public(self._state, now, include_log)

        if lock_result is not None:
            view["lockResult"] = lock_result
        return view

    @staticmethod
    def _apply_targets(staged: dict, envelope: dict, now: int) -> bool:
        raw = envelope.get("targets")
        if not isinstance(raw, dict):
            logger.debug("Ignored targets update: not an object")
            return False
        staged["targets"] = normalize_targets(raw)
        staged["updatedAt"] = safe_number(envelope.get("updatedAt"), now)
        logger.info(f"TARGETS       {len(staged['targets'])} target(s) (updatedAt={staged['updatedAt']})")
        return True

    @staticmethod
    def _apply_control(staged: dict, envelope: dict, now: int) -> bool:
        command = normalize_control_command(envelope.get("control"))
        if command is None:
            logger.debug("Ignored control update: invalid command")
            return False
        staged["control"] = command
        staged["controlUpdatedAt"] = safe_number(envelope.get("controlUpdatedAt"), now)
        logger.info(
            f"CONTROL       {command['action']} {command['commandId']} "
            f"({len(command['queue'])} coords, continuous={command['continuous']})"
        )
        return True

    @staticmethod
    def _apply_activity(staged: dict, envelope: dict, now: int) -> bool:
        raw = envelope.get("activityBatch")
        batch = normalize_observation_batch(raw)
        dropped = len(raw) - len(batch) if isinstance(raw, list) else 0
        if dropped:
            logger.debug(f"Dropped {dropped} malformed observation(s)")
        if not batch:
            return False
        merged = merge_activity(staged["activity"], batch)
        merged["updatedAt"] = safe_number(envelope.get("activityUpdatedAt"), now)
        staged["activity"] = merged
        logger.info(f"ACTIVITY      merged {len(batch)} observation(s), {len(merged['buckets'])} bucket(s) total")
        return True

    @staticmethod
    def _apply_coords(staged: dict, envelope: dict) -> bool:
        batch = normalize_coords_batch(envelope.get("coordsBatch"))
        if not batch:
            return False
        merged = merge_shared_coordinates(staged["sharedCoords"], batch)
        if merged == staged["sharedCoords"]:
            return False
        staged["sharedCoords"] = merged
        logger.info(f"COORDS        {len(batch)} subject(s) updated")
        return True
