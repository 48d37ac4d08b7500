"""
Unit tests for StateStore: change-token lifecycle, mapping upsert semantics,
enumeration order and account removal.
"""

import threading

from calendar_bridge.db import StateStore


class TestChangeTokens:
    def test_missing_token_is_none(self, state_store):
        assert state_store.get_change_token("acct", "cal") is None

    def test_save_then_get(self, state_store):
        state_store.save_change_token("acct", "cal", "tok-1")
        assert state_store.get_change_token("acct", "cal") == "tok-1"

    def test_last_write_wins(self, state_store):
        state_store.save_change_token("acct", "cal", "tok-1")
        state_store.save_change_token("acct", "cal", "tok-2")
        assert state_store.get_change_token("acct", "cal") == "tok-2"
        assert len(state_store.list_calendars()) == 1

    def test_none_token_is_legal(self, state_store):
        """Saving None clears the token, forcing a full fetch next time."""
        state_store.save_change_token("acct", "cal", "tok-1")
        state_store.save_change_token("acct", "cal", None)
        assert state_store.get_change_token("acct", "cal") is None
        assert state_store.list_calendars() == [("acct", "cal")]

    def test_tokens_scoped_per_calendar(self, state_store):
        state_store.save_change_token("acct", "cal-a", "tok-a")
        state_store.save_change_token("acct", "cal-b", "tok-b")
        assert state_store.get_change_token("acct", "cal-a") == "tok-a"
        assert state_store.get_change_token("acct", "cal-b") == "tok-b"

    def test_token_survives_reopen(self, db_path):
        with StateStore(db_path) as store:
            store.save_change_token("acct", "cal", "tok-1")
        with StateStore(db_path) as store:
            assert store.get_change_token("acct", "cal") == "tok-1"


class TestCalendarSelection:
    def test_add_calendar_creates_state_without_token(self, state_store):
        state_store.add_calendar("acct", "cal", "eds-uid")
        sync_state = state_store.get_sync_state("acct", "cal")
        assert sync_state.change_token is None
        assert sync_state.local_calendar_id == "eds-uid"

    def test_reselecting_resets_token_but_keeps_local_calendar(self, state_store):
        state_store.add_calendar("acct", "cal", "eds-uid")
        state_store.save_change_token("acct", "cal", "tok-1")

        state_store.add_calendar("acct", "cal")

        sync_state = state_store.get_sync_state("acct", "cal")
        assert sync_state.change_token is None
        assert sync_state.local_calendar_id == "eds-uid"

    def test_get_sync_state_missing(self, state_store):
        assert state_store.get_sync_state("acct", "nope") is None


class TestMappings:
    def test_save_and_get(self, state_store):
        state_store.save_mapping("acct", "cal", "G1", "L1", "hash1", "2026-03-01T10:00:00+00:00")
        mapping = state_store.get_mapping("acct", "cal", "G1")
        assert mapping.local_event_id == "L1"
        assert mapping.content_hash == "hash1"
        assert mapping.last_modified == "2026-03-01T10:00:00+00:00"

    def test_upsert_on_conflict_updates_not_errors(self, state_store):
        """Re-saving the same foreign id replaces the local id instead of raising."""
        state_store.save_mapping("acct", "cal", "G1", "L1_old", "old_hash")
        state_store.save_mapping("acct", "cal", "G1", "L1_new", "new_hash")

        mappings = state_store.list_mappings("acct", "cal")
        assert len(mappings) == 1
        assert mappings[0].local_event_id == "L1_new"
        assert mappings[0].content_hash == "new_hash"

    def test_mapping_keyed_on_foreign_id(self, state_store):
        """Two foreign events may never collapse into one row, even with one local id."""
        state_store.save_mapping("acct", "cal", "G1", "L1", "h1")
        state_store.save_mapping("acct", "cal", "G2", "L1", "h2")
        assert len(state_store.list_mappings("acct", "cal")) == 2

    def test_mappings_scoped_to_calendar(self, state_store):
        state_store.save_mapping("acct", "cal-a", "G1", "L1", "h1")
        assert state_store.get_mapping("acct", "cal-b", "G1") is None
        assert state_store.list_mappings("acct", "cal-b") == []

    def test_mapping_counts(self, state_store):
        state_store.save_mapping("acct", "cal-a", "G1", "L1", "h1")
        state_store.save_mapping("acct", "cal-a", "G2", "L2", "h2")
        state_store.save_mapping("acct", "cal-b", "G3", "L3", "h3")
        assert state_store.mapping_counts() == {("acct", "cal-a"): 2, ("acct", "cal-b"): 1}


class TestEnumeration:
    def test_list_calendars_in_selection_order(self, state_store):
        state_store.add_calendar("bob", "work")
        state_store.add_calendar("alice", "home")
        state_store.add_calendar("bob", "family")
        assert state_store.list_calendars() == [
            ("bob", "work"),
            ("alice", "home"),
            ("bob", "family"),
        ]

    def test_list_accounts_distinct(self, state_store):
        state_store.add_calendar("bob", "work")
        state_store.add_calendar("alice", "home")
        state_store.add_calendar("bob", "family")
        assert state_store.list_accounts() == ["bob", "alice"]


class TestRemoveAccount:
    def test_remove_account_deletes_state_and_mappings(self, state_store):
        state_store.add_calendar("bob", "work")
        state_store.add_calendar("alice", "home")
        state_store.save_mapping("bob", "work", "G1", "L1", "h1")
        state_store.save_mapping("alice", "home", "G2", "L2", "h2")

        assert state_store.remove_account("bob") == 1

        assert state_store.list_calendars() == [("alice", "home")]
        assert state_store.list_mappings("bob", "work") == []
        assert len(state_store.list_mappings("alice", "home")) == 1

    def test_remove_unknown_account(self, state_store):
        assert state_store.remove_account("nobody") == 0


class TestSerializedAccess:
    def test_concurrent_writers_do_not_corrupt(self, state_store):
        """Many threads writing through one store all land (one lock, one connection)."""

        def _writer(n: int):
            for i in range(20):
                state_store.save_mapping("acct", "cal", f"G{n}-{i}", f"L{n}-{i}", "h")
                state_store.save_change_token("acct", "cal", f"tok-{n}-{i}")

        threads = [threading.Thread(target=_writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(state_store.list_mappings("acct", "cal")) == 80
        assert state_store.get_change_token("acct", "cal").startswith("tok-")
