"""
Lease lock: single-slot edit lock with owner, possession token and expiry.

States: Free (record is None) or Held(ownerId, token, expiresAt).

The record is a plain dict so it persists with the rest of the sync
state:
{
  "ownerId":    "laptop-a",
  "ownerLabel": "Laptop A",
  "token":      "<opaque secret>",
  "acquiredAt": <ms>,
  "expiresAt":  <ms>,
  "updatedAt":  <ms>
}

Expiry is lazy: every operation first treats a record whose expiresAt
has passed as Free. There is no background sweep.

All functions are pure and return a LockOutcome; `changed` tells the
caller whether the transition needs to be persisted.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from targetsync.normalize import safe_number

logger = logging.getLogger("sync_server")

TTL_MIN_MS = 30_000
TTL_MAX_MS = 15 * 60_000
TTL_DEFAULT_MS = 120_000

OP_ACQUIRE = "acquire"
OP_HEARTBEAT = "heartbeat"
OP_RELEASE = "release"

# ── Result status constants ───────────────────────────────────────────────
STATUS_GRANTED   = "granted"
STATUS_TAKEOVER  = "takeover"
STATUS_REFRESHED = "refreshed"
STATUS_RELEASED  = "released"
STATUS_OCCUPIED  = "occupied"
STATUS_NO_LOCK   = "no_lock"
STATUS_FORBIDDEN = "forbidden"
STATUS_INVALID   = "invalid"

_OK_STATUSES = {STATUS_GRANTED, STATUS_TAKEOVER, STATUS_REFRESHED, STATUS_RELEASED}


@dataclass
class LockOutcome:
    record: Optional[dict]
    status: str
    changed: bool = False
    holder: Optional[dict] = None
    displaced: Optional[dict] = None
    extra: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in _OK_STATUSES

    def to_result(self, now: int) -> dict:
        """Wire form of the outcome (never carries the token)."""
        result = {"ok": self.ok, "status": self.status, "lock": public_view(self.record, now)}
        if self.holder is not None:
            result["holder"] = self.holder
        if self.displaced is not None:
            result["displaced"] = self.displaced
        result.update(self.extra)
        return result


def clamp_ttl(ttl_ms) -> int:
    ttl = safe_number(ttl_ms, 0)
    if not ttl:
        return TTL_DEFAULT_MS
    return int(min(TTL_MAX_MS, max(TTL_MIN_MS, ttl)))


def is_expired(record: Optional[dict], now: int) -> bool:
    return record is not None and now >= (safe_number(record.get("expiresAt"), 0) or 0)


def live_record(record: Optional[dict], now: int) -> Optional[dict]:
    """The record if it is still held, else None (lazy expiry)."""
    if record is None or is_expired(record, now):
        return None
    return record


def public_view(record: Optional[dict], now: int) -> Optional[dict]:
    """What any client may see about the current holder."""
    live = live_record(record, now)
    if live is None:
        return None
    return {
        "ownerId":    live.get("ownerId", ""),
        "ownerLabel": live.get("ownerLabel", ""),
        "acquiredAt": live.get("acquiredAt", 0),
        "expiresAt":  live.get("expiresAt", 0),
        "updatedAt":  live.get("updatedAt", 0),
    }


def _owns(record: dict, owner_id: str, token: str) -> bool:
    return record.get("ownerId") == owner_id and record.get("token") == token


def acquire(record, owner_id: str, token: str, now: int, *, ttl_ms=None,
            force: bool = False, owner_label: str = "") -> LockOutcome:
    """
    Free                       -> Held by requester, "granted"
    Held by same owner + token -> expiry refreshed, "granted" (re-entrant)
    Held otherwise, no force   -> unchanged, "occupied" + holder
    Held otherwise, force      -> Held by requester, "takeover" + displaced

    Re-entry requires the stored token; a matching ownerId alone is
    treated like any other requester.
    """
    if not owner_id or not token:
        return LockOutcome(record, STATUS_INVALID)

    live = live_record(record, now)
    expires = now + clamp_ttl(ttl_ms)
    label = owner_label or owner_id

    if live is not None and _owns(live, owner_id, token):
        refreshed = {
            **live,
            "ownerLabel": label,
            "expiresAt":  expires,
            "updatedAt":  now,
        }
        return LockOutcome(refreshed, STATUS_GRANTED, changed=True)

    if live is not None and not force:
        return LockOutcome(record, STATUS_OCCUPIED, holder=public_view(live, now))

    new_record = {
        "ownerId":    owner_id,
        "ownerLabel": label,
        "token":      token,
        "acquiredAt": now,
        "expiresAt":  expires,
        "updatedAt":  now,
    }
    if live is not None:
        displaced = public_view(live, now)
        logger.info(f"LOCK TAKEOVER  {displaced['ownerId']} -> {owner_id}")
        return LockOutcome(new_record, STATUS_TAKEOVER, changed=True, displaced=displaced)
    return LockOutcome(new_record, STATUS_GRANTED, changed=True)


def heartbeat(record, owner_id: str, token: str, now: int, *, ttl_ms=None) -> LockOutcome:
    """Extend the lease; only the exact (ownerId, token) pair may do so."""
    live = live_record(record, now)
    if live is None:
        return LockOutcome(None, STATUS_NO_LOCK)
    if not _owns(live, owner_id, token):
        return LockOutcome(record, STATUS_FORBIDDEN, holder=public_view(live, now))
    refreshed = {**live, "expiresAt": now + clamp_ttl(ttl_ms), "updatedAt": now}
    return LockOutcome(refreshed, STATUS_REFRESHED, changed=True)


def release(record, owner_id: str, token: str, now: int) -> LockOutcome:
    """Free the lock. Releasing an already free (or expired) lock is a no-op success."""
    live = live_record(record, now)
    if live is None:
        return LockOutcome(None, STATUS_RELEASED, extra={"wasHeld": False})
    if not _owns(live, owner_id, token):
        return LockOutcome(record, STATUS_FORBIDDEN, holder=public_view(live, now))
    return LockOutcome(None, STATUS_RELEASED, changed=True, extra={"wasHeld": True})


def apply_lock_command(record, command, now: int) -> LockOutcome:
    """Dispatch a wire lockCommand {op, ownerId, ownerLabel, token, ttlMs, force}."""
    if not isinstance(command, dict):
        return LockOutcome(record, STATUS_INVALID)
    op = str(command.get("op") or command.get("action") or "").strip().lower()
    owner_id = str(command.get("ownerId") or "").strip()
    token = str(command.get("token") or "").strip()
    owner_label = str(command.get("ownerLabel") or "").strip()

    if op == OP_ACQUIRE:
        return acquire(record, owner_id, token, now, ttl_ms=command.get("ttlMs"),
                       force=bool(command.get("force")), owner_label=owner_label)
    if op == OP_HEARTBEAT:
        return heartbeat(record, owner_id, token, now, ttl_ms=command.get("ttlMs"))
    if op == OP_RELEASE:
        return release(record, owner_id, token, now)
    return LockOutcome(record, STATUS_INVALID)
