"""
Diff-and-apply pass for one calendar.
"""

import threading

from calendar_bridge.backend import CalendarBackend
from calendar_bridge.db import StateStore
from calendar_bridge.models import CalendarEvent
from calendar_bridge.models import SyncCancelled
from calendar_bridge.models import SyncResult
from calendar_bridge.sync.utils import build_source_index
from calendar_bridge.sync.utils import compute_hash


def _find_counterpart(
    account_id: str,
    calendar_id: str,
    event: CalendarEvent,
    mirror_by_source: dict[str, CalendarEvent],
    mirror_by_id: dict[str, CalendarEvent],
    state_store: StateStore,
) -> CalendarEvent | None:
    """Locate the mirror of a primary event.

    The source_id stamped on the mirror is authoritative.  When the mirror
    lost it (or never carried it), fall back to the stored mapping, which is
    keyed on the primary id and survives local id churn.
    """
    counterpart = mirror_by_source.get(event.id)
    if counterpart is not None:
        return counterpart

    mapping = state_store.get_mapping(account_id, calendar_id, event.id)
    if mapping is None:
        return None
    counterpart = mirror_by_id.get(mapping.local_event_id)
    if counterpart is None or counterpart.source_id not in (None, event.id):
        return None
    return counterpart


def _save_mapping(
    state_store: StateStore,
    account_id: str,
    calendar_id: str,
    primary_id: str,
    mirror_id: str,
    winner: CalendarEvent,
):
    state_store.save_mapping(
        account_id,
        calendar_id,
        primary_id,
        mirror_id,
        compute_hash(winner),
        winner.last_modified.isoformat(),
    )


def _create_mirror(
    account_id, calendar_id, event, mirror, state_store, result: SyncResult, logger
):
    """Mirror a primary event that has no counterpart yet."""
    created = mirror.create_event(account_id, calendar_id, event.replace(source_id=event.id))
    result.created += 1
    _save_mapping(state_store, account_id, calendar_id, event.id, created.id, event)
    logger.debug(f"Created mirror {created.id} for {event.id}")


def _push_to_mirror(
    account_id, calendar_id, event, counterpart, mirror, state_store, result: SyncResult, logger
):
    """Primary is newer: overwrite the mirror, keeping the mirror's own id."""
    mirror.update_event(
        account_id, calendar_id, event.replace(id=counterpart.id, source_id=event.id)
    )
    result.updated += 1
    _save_mapping(state_store, account_id, calendar_id, event.id, counterpart.id, event)
    logger.debug(f"Updated mirror {counterpart.id} from {event.id}")


def _pull_from_mirror(
    account_id, calendar_id, event, counterpart, primary, state_store, result: SyncResult, logger
):
    """Mirror is newer: overwrite the primary event under its own id."""
    primary.update_event(
        account_id, calendar_id, counterpart.replace(id=event.id, source_id=counterpart.id)
    )
    result.updated += 1
    _save_mapping(state_store, account_id, calendar_id, event.id, counterpart.id, counterpart)
    logger.debug(f"Updated {event.id} from mirror {counterpart.id}")


def reconcile_events(
    account_id: str,
    calendar_id: str,
    primary_events: list[CalendarEvent],
    mirror_events: list[CalendarEvent],
    primary: CalendarBackend,
    mirror: CalendarBackend,
    state_store: StateStore,
    result: SyncResult,
    logger,
    cancel_event: threading.Event | None = None,
):
    """Walk the primary events in backend order and apply newest-wins.

    Counts are accumulated on ``result`` as each write lands, so a failure
    half way leaves an accurate tally of what was applied.  Deletions are not
    detected: an event missing on one side is never removed from the other.
    """
    mirror_by_source = build_source_index(mirror_events)
    mirror_by_id = {e.id: e for e in mirror_events}

    for event in primary_events:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled("Sync cancelled")

        counterpart = _find_counterpart(
            account_id, calendar_id, event, mirror_by_source, mirror_by_id, state_store
        )

        if counterpart is None:
            _create_mirror(account_id, calendar_id, event, mirror, state_store, result, logger)
        elif event.last_modified > counterpart.last_modified:
            _push_to_mirror(
                account_id, calendar_id, event, counterpart, mirror, state_store, result, logger
            )
        elif counterpart.last_modified > event.last_modified:
            _pull_from_mirror(
                account_id, calendar_id, event, counterpart, primary, state_store, result, logger
            )
