"""
Validation / normalization of untrusted sync payloads.

Every structure that arrives over the wire (or out of a persisted file)
passes through one of these functions before it touches shared state.
They never raise on bad input: malformed fields fall back to a default,
malformed entries in a batch are dropped and the rest of the batch
survives.

Coordinates are "a:b:c" strings of three positive integers. Anything
else normalizes to INVALID_COORD ("") and is left out of lists/sets.
"""

import math
import random
import string
from typing import Optional

from targetsync.utils import now_ms

INVALID_COORD = ""

BUCKET_MS = 5 * 60 * 1000

ACTIVITY_UNKNOWN = "-"
ACTIVITY_ACTIVE = "*"

DEBRIS_YES = "yes"
DEBRIS_NO = "no"
_DEBRIS_YES_TOKENS = {"yes", "si", "sí"}

ACTION_START = "start"
ACTION_STOP = "stop"
CONTROL_ACTIONS = (ACTION_START, ACTION_STOP)

SCAN_DELAY_MIN_MS = 1000
SCAN_DELAY_MAX_MS = 5000
REPEAT_INTERVAL_MIN_MS = 60000
REPEAT_INTERVAL_MAX_MS = 3600000

TARGET_KEY_PREFIXES = ("id:", "name:")


# ── Scalars ───────────────────────────────────────────────────────────────

def safe_number(value, fallback=None):
    """Return value as a finite number, or fallback. Booleans are not numbers."""
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(num):
        return fallback
    return int(num) if num.is_integer() else num


def _pick(obj: dict, *names, default=None):
    """First present, non-None value among several (aliased) field names."""
    for name in names:
        value = obj.get(name)
        if value is not None:
            return value
    return default


def _clean_str(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def floor_to_bucket(ts, bucket_ms: int = BUCKET_MS) -> int:
    return int(ts // bucket_ms) * bucket_ms


def clamp_scan_delay(value) -> int:
    ms = safe_number(value, 0)
    if not ms:
        return SCAN_DELAY_MIN_MS
    return int(min(SCAN_DELAY_MAX_MS, max(SCAN_DELAY_MIN_MS, ms)))


def clamp_repeat_interval(value) -> int:
    ms = safe_number(value, 0)
    if not ms:
        return REPEAT_INTERVAL_MIN_MS
    return int(min(REPEAT_INTERVAL_MAX_MS, max(REPEAT_INTERVAL_MIN_MS, ms)))


# ── Coordinates ───────────────────────────────────────────────────────────

def normalize_coord(coord) -> str:
    """
    Canonicalize a coordinate string.

    "5:10:3" -> "5:10:3", " 05:10:3 " -> "5:10:3",
    "5:10" / "5:-1:3" / "a:b:c" -> INVALID_COORD.
    """
    if coord is None or isinstance(coord, bool):
        return INVALID_COORD
    raw = str(coord).strip()
    if not raw:
        return INVALID_COORD
    parts = raw.split(":")
    if len(parts) != 3:
        return INVALID_COORD
    nums = []
    for part in parts:
        part = part.strip()
        if not (part.isascii() and part.isdigit()):
            return INVALID_COORD
        num = int(part)
        if num <= 0:
            return INVALID_COORD
        nums.append(num)
    return ":".join(str(n) for n in nums)


def coord_sort_key(coord: str) -> tuple:
    return tuple(int(p) for p in coord.split(":"))


def normalize_coord_list(items) -> list:
    """Dedupe valid coordinates, keeping first-seen order."""
    if not isinstance(items, (list, tuple)):
        return []
    seen = {}
    for item in items:
        coord = normalize_coord(item)
        if coord:
            seen.setdefault(coord, None)
    return list(seen)


def sorted_coords(items) -> list:
    """Valid, deduplicated coordinates in (a, b, c) numeric order."""
    return sorted(normalize_coord_list(list(items)), key=coord_sort_key)


# ── Activity values ───────────────────────────────────────────────────────

def normalize_activity_value(value) -> str:
    """Accept '-', '*' or a string of digits (minutes ago); anything else is '-'."""
    if value is None or isinstance(value, bool):
        return ACTIVITY_UNKNOWN
    raw = str(value).strip()
    if raw in (ACTIVITY_ACTIVE, ACTIVITY_UNKNOWN):
        return raw
    if raw.isascii() and raw.isdigit():
        return raw
    return ACTIVITY_UNKNOWN


def normalize_debris_value(value) -> str:
    if isinstance(value, bool):
        return DEBRIS_YES if value else DEBRIS_NO
    return DEBRIS_YES if _clean_str(value).casefold() in _DEBRIS_YES_TOKENS else DEBRIS_NO


def normalize_observation(obs) -> Optional[dict]:
    """Return a canonical ActivityObservation dict, or None when unusable."""
    if not isinstance(obs, dict):
        return None
    subject_key = _clean_str(_pick(obs, "subjectKey", "playerKey"))
    coordinate = normalize_coord(_pick(obs, "coordinate", "coords"))
    seen_at = safe_number(obs.get("seenAt"))
    if not subject_key or not coordinate or seen_at is None or seen_at <= 0:
        return None

    bucket_ts = safe_number(_pick(obs, "bucketTimestamp", "bucketTs"))
    if bucket_ts is None or bucket_ts <= 0:
        bucket_ts = seen_at
    subject_name = _clean_str(_pick(obs, "subjectName", "playerName")) or subject_key

    return {
        "subjectKey":      subject_key,
        "subjectName":     subject_name,
        "coordinate":      coordinate,
        "seenAt":          seen_at,
        "bucketTimestamp": floor_to_bucket(bucket_ts),
        "planetActivity":  normalize_activity_value(_pick(obs, "planetActivity", "planet")),
        "moonActivity":    normalize_activity_value(_pick(obs, "moonActivity", "moon")),
        "debrisPresent":   normalize_debris_value(_pick(obs, "debrisPresent", "debris")),
    }


def normalize_observation_batch(batch) -> list:
    if not isinstance(batch, (list, tuple)):
        return []
    out = []
    for item in batch:
        obs = normalize_observation(item)
        if obs is not None:
            out.append(obs)
    return out


def normalize_coords_batch(batch) -> dict:
    """
    Normalize a shared-coordinate batch into {subjectKey: [coords]}.

    Accepts a mapping {subjectKey: [coords]} or a list of records
    {subjectKey, coordinates: [...]} / {subjectKey, coordinate}.
    """
    pairs = []
    if isinstance(batch, dict):
        pairs = list(batch.items())
    elif isinstance(batch, (list, tuple)):
        for rec in batch:
            if not isinstance(rec, dict):
                continue
            coords = rec.get("coordinates")
            if coords is None and rec.get("coordinate") is not None:
                coords = [rec.get("coordinate")]
            pairs.append((rec.get("subjectKey"), coords))

    out: dict = {}
    for key, coords in pairs:
        key = _clean_str(key)
        valid = normalize_coord_list(coords)
        if key and valid:
            out.setdefault(key, [])
            out[key].extend(c for c in valid if c not in out[key])
    return out


# ── Targets ───────────────────────────────────────────────────────────────

def build_target_key(subject_id, display_name: str = "") -> str:
    """'id:<n>' when a positive numeric id is known, else 'name:<display name>'."""
    num = safe_number(subject_id, 0)
    if isinstance(num, int) and num > 0:
        return f"id:{num}"
    return f"name:{display_name or 'unknown'}"


def looks_like_target_key(key) -> bool:
    return isinstance(key, str) and key.startswith(TARGET_KEY_PREFIXES)


def looks_like_target_map(obj) -> bool:
    return isinstance(obj, dict) and bool(obj) and all(looks_like_target_key(k) for k in obj)


def normalize_targets(targets) -> dict:
    """
    Coerce a target mapping into {key: {"displayName": str, ...}}.

    `true` values become empty records, a legacy `name` field is read as
    displayName, and anything that is not an object is dropped.
    """
    normalized: dict = {}
    if not isinstance(targets, dict):
        return normalized
    for key, value in targets.items():
        if not isinstance(key, str) or not key:
            continue
        if value is True:
            normalized[key] = {"displayName": ""}
            continue
        if not isinstance(value, dict):
            continue
        record = dict(value)
        name = record.pop("name", None)
        display = record.get("displayName", name)
        record["displayName"] = display if isinstance(display, str) else ""
        normalized[key] = record
    return normalized


# ── Control commands ──────────────────────────────────────────────────────

def new_command_id(ts: int = None) -> str:
    """Opaque unique id: '<ms timestamp>-<6 base36 chars>'."""
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(random.choice(alphabet) for _ in range(6))
    return f"{ts if ts is not None else now_ms()}-{suffix}"


def build_control_command(action: str, *, continuous: bool = False, queue=None,
                          scan_delay_ms=None, repeat_interval_ms=None) -> dict:
    """Construct a fresh ControlCommand as issued by a host agent."""
    issued = now_ms()
    return {
        "commandId":        new_command_id(issued),
        "action":           _clean_str(action).lower(),
        "issuedAt":         issued,
        "continuous":       bool(continuous),
        "queue":            normalize_coord_list(queue or []),
        "scanDelayMs":      clamp_scan_delay(scan_delay_ms),
        "repeatIntervalMs": clamp_repeat_interval(repeat_interval_ms),
    }


def normalize_control_command(control) -> Optional[dict]:
    """Return a canonical ControlCommand, or None when id/action are unusable."""
    if not isinstance(control, dict):
        return None
    command_id = _clean_str(_pick(control, "commandId", "cmdId"))
    action = _clean_str(control.get("action")).lower()
    if not command_id or action not in CONTROL_ACTIONS:
        return None
    return {
        "commandId":        command_id,
        "action":           action,
        "issuedAt":         safe_number(control.get("issuedAt"), 0),
        "continuous":       bool(control.get("continuous")),
        "queue":            normalize_coord_list(control.get("queue")),
        "scanDelayMs":      clamp_scan_delay(control.get("scanDelayMs")),
        "repeatIntervalMs": clamp_repeat_interval(
            _pick(control, "repeatIntervalMs", "continuousIntervalMs")
        ),
    }
