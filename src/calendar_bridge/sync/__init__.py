"""
SyncEngine: orchestrates single-calendar and fleet sync runs.
"""

import logging
import threading
from collections.abc import Callable
from collections.abc import Iterable
from datetime import datetime
from datetime import timezone

from calendar_bridge.backend import CalendarBackend
from calendar_bridge.db import StateStore
from calendar_bridge.models import SyncCancelled
from calendar_bridge.models import SyncConfig
from calendar_bridge.models import SyncProgress
from calendar_bridge.models import SyncResult
from calendar_bridge.sync.reconcile import reconcile_events
from calendar_bridge.sync.utils import clip_to_window
from calendar_bridge.sync.utils import sync_window

ProgressListener = Callable[[SyncProgress], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Reconciles a token-bearing primary backend with a mirror backend.

    The engine owns no backend-specific logic: ``primary`` is whichever
    backend hands out change tokens, ``mirror`` is fetched in full every run.
    """

    def __init__(
        self,
        primary: CalendarBackend,
        mirror: CalendarBackend,
        state_store: StateStore,
        config: SyncConfig | None = None,
        listeners: Iterable[ProgressListener] = (),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.primary = primary
        self.mirror = mirror
        self.state_store = state_store
        self.config = config or SyncConfig()
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._listeners: list[ProgressListener] = list(listeners)

    def add_listener(self, listener: ProgressListener):
        self._listeners.append(listener)

    def _report(self, account_id: str, calendar_id: str, status: str, percent: int):
        progress = SyncProgress(account_id, calendar_id, status, percent)
        for listener in self._listeners:
            try:
                listener(progress)
            except Exception:
                # Observers must never influence the sync itself
                self.logger.exception("Progress listener failed")

    def sync_one(
        self,
        account_id: str,
        calendar_id: str,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        """Sync one (account, calendar) pair.

        Never raises for backend, storage or cancellation problems; those are
        folded into the returned result together with the counts of whatever
        was applied before the failure.
        """
        result = SyncResult()
        try:
            self._report(account_id, calendar_id, "Starting sync...", 0)
            token = self.state_store.get_change_token(account_id, calendar_id)
            window_start, window_end = sync_window(
                self.clock(), self.config.window_past_days, self.config.window_future_days
            )

            self._report(account_id, calendar_id, "Fetching primary events...", 20)
            primary_events = self.primary.list_events(
                account_id, calendar_id, window_start, window_end, token
            )
            if not token:
                primary_events = clip_to_window(primary_events, window_start, window_end)

            self._report(account_id, calendar_id, "Fetching mirror events...", 40)
            mirror_events = self.mirror.list_events(
                account_id, calendar_id, window_start, window_end
            )
            self.logger.debug(
                f"{account_id}/{calendar_id}: {len(primary_events)} primary, "
                f"{len(mirror_events)} mirror event(s)"
                + (" (incremental)" if token else "")
            )

            self._report(account_id, calendar_id, "Processing changes...", 60)
            reconcile_events(
                account_id,
                calendar_id,
                primary_events,
                mirror_events,
                self.primary,
                self.mirror,
                self.state_store,
                result,
                self.logger,
                cancel_event,
            )

            # Not transactional with the writes above: a crash here means the
            # next run re-applies against the old token.
            self._report(account_id, calendar_id, "Updating change token...", 90)
            new_token = self.primary.get_change_token(account_id, calendar_id)
            self.state_store.save_change_token(account_id, calendar_id, new_token)

            self._report(account_id, calendar_id, "Sync complete", 100)
            self.logger.info(
                f"Synced {account_id}/{calendar_id}: "
                f"{result.created} created, {result.updated} updated"
            )
        except SyncCancelled:
            result.success = False
            result.cancelled = True
            result.error = "Sync cancelled"
            self.logger.warning(f"Sync of {account_id}/{calendar_id} cancelled")
            self._report(account_id, calendar_id, "Sync cancelled", 100)
        except Exception as e:
            result.success = False
            result.error = str(e)
            self.logger.error(f"Sync of {account_id}/{calendar_id} failed: {e}")
            self._report(account_id, calendar_id, f"Sync failed: {e}", 100)
        return result

    def sync_all(self, cancel_event: threading.Event | None = None) -> SyncResult:
        """Sync every stored calendar, one after another.

        Best effort: a failing calendar does not stop the rest.  The returned
        error is the last one encountered; counts are summed over all runs.
        """
        total = SyncResult()
        for account_id, calendar_id in self.state_store.list_calendars():
            if cancel_event is not None and cancel_event.is_set():
                total = total + SyncResult(success=False, error="Sync cancelled", cancelled=True)
                break
            result = self.sync_one(account_id, calendar_id, cancel_event)
            total = total + result
            if result.cancelled:
                break
        return total
