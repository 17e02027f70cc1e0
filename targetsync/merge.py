"""
Merge engine for the two append-only logs: activity buckets and shared
coordinates.

Both merges are pure: they return a new aggregate and never mutate the
one passed in, so the state store can stage an update on a copy and only
commit it once it has been persisted.
"""

import logging

from targetsync.normalize import coord_sort_key, normalize_coord_list

logger = logging.getLogger("sync_server")


def empty_activity() -> dict:
    return {"players": {}, "buckets": {}, "updatedAt": 0}


def bucket_id(obs: dict) -> str:
    return f"{obs['subjectKey']}|{obs['coordinate']}|{obs['bucketTimestamp']}"


def _entry(obs: dict) -> dict:
    return {
        "seenAt":         obs["seenAt"],
        "planetActivity": obs["planetActivity"],
        "moonActivity":   obs["moonActivity"],
        "debrisPresent":  obs["debrisPresent"],
    }


def merge_activity(existing: dict, batch: list) -> dict:
    """
    Fold a batch of normalized observations into an activity aggregate.

    Per (subject, coordinate, bucket) only the latest observation is kept:
    an incoming entry replaces the retained one when its seenAt is >= the
    bucket's lastUpdated, so ties favour the incoming record and older
    sightings submitted late are ignored. PlayerSummary.lastSeen follows
    the same max rule, which also lets a newer display name win.

    Re-applying an already merged batch leaves bucket contents unchanged.
    """
    existing = existing or empty_activity()
    players = dict(existing.get("players") or {})
    buckets = dict(existing.get("buckets") or {})

    for obs in batch:
        bid = bucket_id(obs)
        seen_at = obs["seenAt"]
        current = buckets.get(bid)

        if current is None or current.get("entry") is None or seen_at >= current.get("lastUpdated", 0):
            buckets[bid] = {
                "id":              bid,
                "subjectKey":      obs["subjectKey"],
                "subjectName":     obs["subjectName"],
                "coordinate":      obs["coordinate"],
                "bucketTimestamp": obs["bucketTimestamp"],
                "entry":           _entry(obs),
                "lastUpdated":     seen_at,
            }
        else:
            logger.debug(f"  [merge] Ignored older sighting for {bid} ({seen_at} < {current['lastUpdated']})")

        summary = players.get(obs["subjectKey"])
        if summary is None or seen_at >= summary.get("lastSeen", 0):
            players[obs["subjectKey"]] = {
                "subjectKey":  obs["subjectKey"],
                "subjectName": obs["subjectName"],
                "lastSeen":    seen_at,
            }

    return {
        "players":   players,
        "buckets":   buckets,
        "updatedAt": existing.get("updatedAt", 0),
    }


def merge_shared_coordinates(existing: dict, batch: dict) -> dict:
    """
    Union a {subjectKey: [coords]} batch into the shared-coordinate index.

    Coordinates only accumulate; each subject's list stays sorted by
    (a, b, c) numeric order.
    """
    merged = dict(existing or {})
    for key, coords in batch.items():
        current = set(normalize_coord_list(merged.get(key, [])))
        union = current | set(normalize_coord_list(coords))
        if union and union != current:
            merged[key] = sorted(union, key=coord_sort_key)
    return merged


def activity_summary(activity: dict, shared_coords: dict) -> dict:
    """The lightweight view served to every GET (no raw buckets)."""
    activity = activity or empty_activity()
    return {
        "players":     dict(activity.get("players") or {}),
        "coordinates": dict(shared_coords or {}),
        "bucketCount": len(activity.get("buckets") or {}),
        "updatedAt":   activity.get("updatedAt", 0),
    }


def coords_for_subjects(shared_coords: dict, subject_keys) -> list:
    """Sorted union of the shared coordinates of several subjects (scan queue)."""
    union = set()
    for key in subject_keys:
        union.update(normalize_coord_list((shared_coords or {}).get(key, [])))
    return sorted(union, key=coord_sort_key)
