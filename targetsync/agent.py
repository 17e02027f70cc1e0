"""
Sync agents: the per-machine side of target/command/activity relaying.

Three classes:
  HostAgent:  owns the target list, pushes it (debounced) and issues
              remote start/stop commands; optionally holds the edit lock
  SlaveAgent: polls the server, mirrors the target list locally, applies
              control commands at most once and pushes activity batches
  NullAgent:  no-op drop-in when sync_mode is "off"

Usage:
    from targetsync.agent import build_agent
    agent = build_agent(config)
    agent.start()
    ...
    agent.stop()
"""

import json
import logging
import threading
import uuid
from typing import Optional

from targetsync.merge import coords_for_subjects
from targetsync.local_store import LocalStore
from targetsync.normalize import (
    ACTION_START,
    ACTION_STOP,
    build_control_command,
    looks_like_target_map,
    normalize_control_command,
    normalize_coord_list,
    normalize_coords_batch,
    normalize_observation,
    normalize_targets,
    safe_number,
)
from targetsync.scan import ScanController, log_navigator
from targetsync.scheduler import ActivityBuffer, DebouncedTask, PeriodicTask
from targetsync.sync_client import SyncClient, SyncError, SyncStatus
from targetsync.utils import get_worker_id, now_ms

logger = logging.getLogger("targetsync")


def _serialize(targets: dict) -> str:
    return json.dumps(targets, sort_keys=True, ensure_ascii=False)


# ═════════════════════════════════════════════════════════════════════════
#  NullAgent: no-op drop-in when sync is disabled
# ═════════════════════════════════════════════════════════════════════════

class NullAgent:
    """
    Agent that does nothing.

    Used when sync_mode: off in config.yaml, so call sites can start/stop
    an agent unconditionally.
    """

    enabled = False
    role = "off"

    def __init__(self):
        self.status = SyncStatus(enabled=False)

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    def describe(self) -> str:
        return self.status.describe()


class _BaseAgent:
    enabled = True
    role = ""

    def __init__(self, client: SyncClient, local: LocalStore, config: dict, *, timer_factory=threading.Timer):
        self.client = client
        self.local = local
        self.config = config
        self.status = client.status
        self._timer_factory = timer_factory

    def _ready(self) -> bool:
        if not self.client.configured:
            logger.warning(f"[sync {self.role}] mode enabled but sync_endpoint is not valid")
            self.status.set_offline("config incomplete")
            return False
        return True

    def describe(self) -> str:
        return self.status.describe()


# ═════════════════════════════════════════════════════════════════════════
#  HostAgent
# ═════════════════════════════════════════════════════════════════════════

class HostAgent(_BaseAgent):
    """
    Authoritative producer of the target list and controller of slaves.

    Every local target edit schedules a push ~push_debounce seconds after
    the last edit; edits made while a push is in flight wait for it and go
    out in the next one.

    With edit_lock on, pushes need the lease. While it is not held, every
    push attempt and every lock tick asks for it again.
    """

    role = "host"

    def __init__(self, client: SyncClient, local: LocalStore, config: dict, *, timer_factory=threading.Timer):
        super().__init__(client, local, config, timer_factory=timer_factory)
        self._pending_lock = threading.Lock()
        self._pending_targets: Optional[dict] = None
        self._push_task = DebouncedTask(
            "targets-push", config.get("push_debounce", 0.7), self._push_pending,
            restart_on_trigger=True, timer_factory=timer_factory,
        )

        # Edit lock identity: ownerId is stable per machine, the token per process
        self.owner_id = str(config.get("owner_id") or get_worker_id())
        self.owner_label = str(config.get("owner_label") or self.owner_id)
        self._lock_token = uuid.uuid4().hex
        self._lock_ttl_ms = config.get("lock_ttl_ms", 120000)
        self._lock_held = False
        self._lock_task = PeriodicTask(
            "edit-lock-heartbeat", max(self._lock_ttl_ms / 3000.0, 1.0), self._heartbeat_lock,
            timer_factory=timer_factory,
        )

    @property
    def holds_lock(self) -> bool:
        return self._lock_held

    @property
    def push_state(self) -> str:
        return self._push_task.state

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        if not self._ready():
            return
        self.status.set_offline("")
        if self.config.get("edit_lock", False):
            self.acquire_edit_lock(force=bool(self.config.get("force_lock", False)))
            # Heartbeats while held, re-acquires while not
            self._lock_task.start()
        self.queue_push(self.local.load_targets())
        logger.info(f"[sync host] started, pushing to {self.config.get('sync_endpoint', '')}")

    def stop(self) -> None:
        self._push_task.cancel()
        with self._pending_lock:
            self._pending_targets = None
        if self._lock_held:
            self.release_edit_lock()
        self._lock_task.stop()
        self.status.set_offline("")

    # ── Target list ───────────────────────────────────────────────────────

    def set_targets(self, targets: dict) -> dict:
        """Replace the local target list and schedule a push."""
        saved = self.local.save_targets(targets)
        self.queue_push(saved)
        return saved

    def mark_target(self, key: str, display_name: str = "") -> dict:
        targets = self.local.load_targets()
        targets[key] = {"displayName": display_name or ""}
        return self.set_targets(targets)

    def unmark_target(self, key: str) -> dict:
        targets = self.local.load_targets()
        targets.pop(key, None)
        return self.set_targets(targets)

    def queue_push(self, targets: dict) -> None:
        if not self.client.configured:
            return
        with self._pending_lock:
            self._pending_targets = normalize_targets(targets)
        self._push_task.trigger()

    def flush_push(self) -> bool:
        """Push any pending target list right away (CLI one-shots, shutdown)."""
        return self._push_task.run_now()

    def _push_pending(self) -> bool:
        with self._pending_lock:
            targets = self._pending_targets
            self._pending_targets = None
        if targets is None:
            return False

        if self.config.get("edit_lock", False) and not self._ensure_lock():
            logger.warning("[sync host] push suppressed: edit lock not held")
            self._restore_pending(targets)
            return False

        try:
            self.client.put_update({"targets": targets, "updatedAt": now_ms()})
        except SyncError as exc:
            logger.warning(f"[sync host] push failed: {exc.reason}")
            self._restore_pending(targets)
            return False
        logger.info(f"[sync host] pushed {len(targets)} target(s)")
        return False

    def _restore_pending(self, targets: dict) -> None:
        with self._pending_lock:
            if self._pending_targets is None:
                self._pending_targets = targets

    def _has_pending(self) -> bool:
        with self._pending_lock:
            return self._pending_targets is not None

    # ── Remote control ────────────────────────────────────────────────────

    def send_control(self, command: dict) -> bool:
        if not self._ready():
            return False
        try:
            self.client.put_update({"control": command, "controlUpdatedAt": now_ms()})
        except SyncError as exc:
            logger.warning(f"[sync host] control command failed: {exc.reason}")
            return False
        logger.info(f"[sync host] sent {command['action']} {command['commandId']}")
        return True

    def build_scan_queue(self) -> list:
        """Sorted coordinates of the current targets, from the server's shared index."""
        targets = self.local.load_targets()
        if not targets:
            return []
        snapshot = self.client.get_state()
        shared = (snapshot.get("activitySummary") or {}).get("coordinates") or {}
        return coords_for_subjects(shared, targets.keys())

    def send_start(self, continuous: bool = False, queue=None, *, scan_delay_ms=None,
                   repeat_interval_ms=None) -> Optional[dict]:
        """Order slaves to scan `queue` (or the current targets' coordinates). Returns the command sent."""
        if queue is None:
            try:
                queue = self.build_scan_queue()
            except SyncError as exc:
                logger.warning(f"[sync host] could not build remote queue: {exc.reason}")
                return None
        coords = normalize_coord_list(queue)
        if not coords:
            logger.warning("[sync host] no coordinates to send to slave")
            return None
        command = build_control_command(
            ACTION_START,
            continuous=continuous,
            queue=coords,
            scan_delay_ms=scan_delay_ms if scan_delay_ms is not None else self.config.get("scan_delay_ms"),
            repeat_interval_ms=(repeat_interval_ms if repeat_interval_ms is not None
                                else self.config.get("repeat_interval_ms")),
        )
        return command if self.send_control(command) else None

    def send_stop(self) -> Optional[dict]:
        command = build_control_command(
            ACTION_STOP,
            scan_delay_ms=self.config.get("scan_delay_ms"),
            repeat_interval_ms=self.config.get("repeat_interval_ms"),
        )
        return command if self.send_control(command) else None

    # ── Edit lock ─────────────────────────────────────────────────────────

    def _lock_command(self, op: str, **extra) -> dict:
        cmd = {
            "op":         op,
            "ownerId":    self.owner_id,
            "ownerLabel": self.owner_label,
            "token":      self._lock_token,
            "ttlMs":      self._lock_ttl_ms,
        }
        cmd.update(extra)
        return cmd

    def acquire_edit_lock(self, force: bool = False) -> dict:
        try:
            resp = self.client.put_update({"lockCommand": self._lock_command("acquire", force=bool(force))})
        except SyncError as exc:
            logger.warning(f"[sync host] edit lock request failed: {exc.reason}")
            return {"ok": False, "status": exc.reason}

        result = resp.get("lockResult") or {}
        self._lock_held = bool(result.get("ok"))
        if self._lock_held:
            if result.get("status") == "takeover":
                displaced = result.get("displaced") or {}
                logger.warning(f"[sync host] took over edit lock from {displaced.get('ownerLabel', '?')}")
            else:
                logger.info("[sync host] edit lock acquired")
            self._lock_task.start()
        elif result.get("status") == "occupied":
            holder = result.get("holder") or {}
            logger.warning(
                f"[sync host] edit lock held by {holder.get('ownerLabel') or holder.get('ownerId', '?')} "
                f"until {holder.get('expiresAt', '?')}"
            )
        return result

    def _ensure_lock(self) -> bool:
        """Hold the edit lock, asking for it again if it is not held."""
        if self._lock_held:
            return True
        result = self.acquire_edit_lock(force=bool(self.config.get("force_lock", False)))
        return bool(result.get("ok"))

    def _heartbeat_lock(self) -> None:
        if not self._lock_held:
            if self._ensure_lock() and self._has_pending():
                self._push_task.trigger()
            return
        try:
            resp = self.client.put_update({"lockCommand": self._lock_command("heartbeat")})
        except SyncError:
            # Retried on the next heartbeat tick
            return
        result = resp.get("lockResult") or {}
        if not result.get("ok"):
            self._lock_held = False
            logger.warning(f"[sync host] lost edit lock ({result.get('status', '?')}), retrying on next tick")

    def release_edit_lock(self) -> dict:
        self._lock_task.stop()
        try:
            resp = self.client.put_update({"lockCommand": self._lock_command("release")})
        except SyncError as exc:
            logger.warning(f"[sync host] edit lock release failed: {exc.reason}")
            self._lock_held = False
            return {"ok": False, "status": exc.reason}
        self._lock_held = False
        result = resp.get("lockResult") or {}
        logger.info(f"[sync host] edit lock released ({result.get('status', '?')})")
        return result


# ═════════════════════════════════════════════════════════════════════════
#  SlaveAgent
# ═════════════════════════════════════════════════════════════════════════

class SlaveAgent(_BaseAgent):
    """
    Consumer of targets, executor of remote commands, producer of activity.

    Polls every pull_interval seconds. The local target list is only
    rewritten when the server's list actually changed, and a control
    command is applied only if its commandId differs from the last one
    this agent applied (persisted in the local store).
    """

    role = "slave"

    def __init__(self, client: SyncClient, local: LocalStore, config: dict, *,
                 scan: ScanController = None, timer_factory=threading.Timer):
        super().__init__(client, local, config, timer_factory=timer_factory)
        self.scan = scan or ScanController(
            log_navigator,
            scan_delay_ms=config.get("scan_delay_ms", 1000),
            repeat_interval_ms=config.get("repeat_interval_ms", 60000),
            timer_factory=timer_factory,
        )
        self._pull_task = PeriodicTask(
            "targets-pull", config.get("pull_interval", 5), self.pull, timer_factory=timer_factory,
        )
        self._flush_task = DebouncedTask(
            "activity-flush", config.get("activity_debounce", 1.0), self._flush_batch,
            restart_on_trigger=False, timer_factory=timer_factory,
        )
        self.buffer = ActivityBuffer(
            max_size=config.get("activity_max_queue", 1000),
            batch_size=config.get("activity_batch_size", 80),
        )
        self._coords_lock = threading.Lock()
        self._pending_coords: dict = {}
        self._last_remote_updated_at = 0
        self._last_remote_serialized = ""
        self.last_command_id = local.last_command_id()

    @property
    def flush_state(self) -> str:
        return self._flush_task.state

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        if not self._ready():
            return
        self.status.set_offline("")
        self._pull_task.start()
        self._pull_task.run_now(force=True)
        logger.info(f"[sync slave] polling {self.config.get('sync_endpoint', '')} "
                    f"every {self.config.get('pull_interval', 5)}s")

    def stop(self) -> None:
        """Tear down every timer class and forget all pending work."""
        self._pull_task.stop()
        self._flush_task.cancel()
        self.buffer.clear()
        with self._coords_lock:
            self._pending_coords = {}
        self._last_remote_updated_at = 0
        self._last_remote_serialized = ""
        self.scan.stop()
        self.status.set_offline("")

    # ── Pull ──────────────────────────────────────────────────────────────

    def pull(self, force: bool = False) -> None:
        try:
            payload = self.client.get_state()
        except SyncError as exc:
            logger.debug(f"[sync slave] pull failed: {exc.reason}")
            return
        self.apply_remote_targets(payload, force=force)
        self.apply_control(payload.get("control"))

    def apply_remote_targets(self, payload: dict, force: bool = False) -> bool:
        """Mirror the server's target list locally. True when the local list was rewritten."""
        if not isinstance(payload, dict):
            return False
        raw = payload.get("targets")
        if not isinstance(raw, dict):
            raw = payload if looks_like_target_map(payload) else {}
        remote = normalize_targets(raw)
        updated_at = safe_number(payload.get("updatedAt"), 0)
        serialized = _serialize(remote)

        has_change = (
            force
            or updated_at > self._last_remote_updated_at
            or serialized != self._last_remote_serialized
        )
        if not has_change:
            return False

        self._last_remote_updated_at = updated_at
        self._last_remote_serialized = serialized
        if serialized == _serialize(self.local.load_targets()):
            return False
        self.local.save_targets(remote)
        logger.info(f"[sync slave] targets updated ({len(remote)} target(s))")
        return True

    def apply_control(self, control) -> bool:
        """Apply a control command at most once. True when it caused a transition."""
        command = normalize_control_command(control)
        if command is None or command["commandId"] == self.last_command_id:
            return False

        self.last_command_id = command["commandId"]
        self.local.set_last_command_id(self.last_command_id)

        if command["action"] == ACTION_STOP:
            self.scan.stop("Remote STOP received")
            return True

        started = self.scan.start_plan(
            command["queue"],
            continuous=command["continuous"],
            scan_delay_ms=command["scanDelayMs"],
            repeat_interval_ms=command["repeatIntervalMs"],
        )
        if started:
            logger.info(f"[sync slave] remote start received ({len(command['queue'])} coords)")
        else:
            logger.warning("[sync slave] remote start without coordinates")
        return True

    # ── Activity push ─────────────────────────────────────────────────────

    def enqueue_observation(self, obs) -> bool:
        normalized = normalize_observation(obs)
        if normalized is None:
            logger.debug(f"[sync slave] dropped malformed observation: {obs!r}")
            return False
        dropped = self.buffer.push(normalized)
        if dropped:
            logger.debug(f"[sync slave] activity buffer full, dropped {dropped} oldest")
        if self.client.configured:
            self._flush_task.trigger()
        return True

    def report_coordinates(self, subject_key: str, coords) -> None:
        batch = normalize_coords_batch({subject_key: coords})
        if not batch:
            return
        self._merge_pending_coords(batch)
        if self.client.configured:
            self._flush_task.trigger()

    def flush_activity(self) -> bool:
        return self._flush_task.run_now()

    def _merge_pending_coords(self, batch: dict) -> None:
        with self._coords_lock:
            for key, coords in batch.items():
                current = self._pending_coords.setdefault(key, [])
                current.extend(c for c in coords if c not in current)

    def _flush_batch(self) -> bool:
        batch = self.buffer.take_batch()
        with self._coords_lock:
            coords, self._pending_coords = self._pending_coords, {}
        if not batch and not coords:
            return False

        envelope = {}
        if batch:
            envelope["activityBatch"] = batch
            envelope["activityUpdatedAt"] = now_ms()
        if coords:
            envelope["coordsBatch"] = coords
        try:
            self.client.put_update(envelope)
        except SyncError as exc:
            logger.warning(f"[sync slave] activity push failed: {exc.reason}")
            dropped = self.buffer.put_back(batch)
            if dropped:
                logger.debug(f"[sync slave] re-queue overflow, dropped {dropped} oldest")
            self._merge_pending_coords(coords)
        else:
            logger.debug(f"[sync slave] pushed {len(batch)} observation(s)")
        return len(self.buffer) > 0


# ═════════════════════════════════════════════════════════════════════════

def build_agent(config: dict, *, navigator=None, timer_factory=threading.Timer):
    """
    Build and return the agent for config["sync_mode"].

      off   -> NullAgent
      host  -> HostAgent
      slave -> SlaveAgent (scanning through `navigator`, default: log only)
    """
    mode = config.get("sync_mode", "off")
    if mode not in ("host", "slave"):
        logger.info("Sync: disabled (NullAgent)")
        return NullAgent()

    status = SyncStatus()
    client = SyncClient(
        config.get("sync_endpoint", ""),
        config.get("sync_token", ""),
        timeout=config.get("http_timeout", 10),
        status=status,
    )
    local = LocalStore(config.get("local_state_file", "local_state.json"))

    if mode == "host":
        return HostAgent(client, local, config, timer_factory=timer_factory)

    scan = ScanController(
        navigator or log_navigator,
        scan_delay_ms=config.get("scan_delay_ms", 1000),
        repeat_interval_ms=config.get("repeat_interval_ms", 60000),
        timer_factory=timer_factory,
    )
    return SlaveAgent(client, local, config, scan=scan, timer_factory=timer_factory)
