from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime

from studysync.models import EventMapping, LocalEntity, RemoteEvent


UNCHANGED = "unchanged"
REMOTE_ONLY = "remote_only"
LOCAL_ONLY = "local_only"
BOTH_CHANGED = "both_changed"
REMOTE_DELETED = "remote_deleted"


def content_hash(event: RemoteEvent) -> str:
    payload = {
        "summary": event.summary,
        "description": event.description,
        "location": event.location,
        "start": event.start.to_google() if event.start else None,
        "end": event.end.to_google() if event.end else None,
        "status": event.status,
        "recurrence": list(event.recurrence),
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _changed_since(value: datetime | None, synced_at: datetime | None) -> bool:
    if value is None:
        return False
    if synced_at is None:
        return True
    return value > synced_at


@dataclass
class ChangeDecision:
    state: str
    remote_changed: bool
    local_changed: bool
    reason: str


def detect_change(
    mapping: EventMapping,
    remote_event: RemoteEvent | None,
    local_entity: LocalEntity | None,
) -> ChangeDecision:
    if remote_event is None or remote_event.cancelled:
        return ChangeDecision(
            state=REMOTE_DELETED,
            remote_changed=True,
            local_changed=False,
            reason="remote_cancelled",
        )

    remote_changed = _changed_since(remote_event.updated, mapping.last_synced_at)
    reason = ""
    if remote_changed and mapping.sync_hash and content_hash(remote_event) == mapping.sync_hash:
        # Timestamp moved but the content we sync did not.
        remote_changed = False
        reason = "remote_metadata_only"

    local_changed = local_entity is not None and _changed_since(local_entity.updated_at, mapping.last_synced_at)

    if remote_changed and local_changed:
        state = BOTH_CHANGED
    elif remote_changed:
        state = REMOTE_ONLY
    elif local_changed:
        state = LOCAL_ONLY
    else:
        state = UNCHANGED
    return ChangeDecision(
        state=state,
        remote_changed=remote_changed,
        local_changed=local_changed,
        reason=reason or state,
    )
