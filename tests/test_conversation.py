"""Tests for per-channel conversation history."""

from conftest import bot_msg, user_msg
from magpie.conversation import (
    SILENT,
    ConversationStore,
    format_timeline,
    labeled_user_turns,
    relative_time,
)


class TestRelativeTime:
    def test_seconds_minutes_hours(self):
        now = 10_000_000
        assert relative_time(now - 5_000, now) == "5s ago"
        assert relative_time(now - 120_000, now) == "2m ago"
        assert relative_time(now - 7_200_000, now) == "2h ago"

    def test_future_clamps_to_zero(self):
        assert relative_time(2_000, 1_000) == "0s ago"


class TestFormatting:
    def test_timeline(self):
        history = [user_msg("1", "hi", ts=0), bot_msg("2", "yo", ts=0)]
        assert format_timeline(history, now=0) == "[0s ago] user: dave: hi\n[0s ago] assistant: yo"

    def test_labeled_turns(self):
        turns = labeled_user_turns([user_msg("1", "hi", ts=5), bot_msg("2", "yo")])
        assert [(t.id, t.author, t.timestamp) for t in turns] == [("1", "dave", 5)]


class TestConversationStore:
    def test_window_is_bounded_and_chronological(self):
        store = ConversationStore(history_limit=3)
        for i in range(5):
            store.append("chan", user_msg(str(i), "x", ts=i))
        assert [m.id for m in store.get("chan").context.history] == ["2", "3", "4"]

    def test_duplicates_ignored(self):
        store = ConversationStore()
        store.append("chan", user_msg("1", "x"))
        state = store.append("chan", user_msg("1", "x"))
        assert len(state.context.history) == 1
        assert state.messages_since_extraction == 1

    def test_only_user_turns_count(self):
        store = ConversationStore()
        store.append("chan", user_msg("1", "x"))
        state = store.append("chan", bot_msg("2", "y"))
        assert state.messages_since_detection == 1

    def test_backfill_merges_by_time(self):
        store = ConversationStore(history_limit=3)
        store.append("chan", user_msg("5", "now", ts=50))
        store.prepend_backfill("chan", [user_msg("1", "a", ts=10), user_msg("2", "b", ts=20), user_msg("3", "c", ts=30)])
        state = store.get("chan")
        assert [m.id for m in state.context.history] == ["2", "3", "5"]
        assert state.backfilled

    def test_channels_are_isolated(self):
        store = ConversationStore()
        store.append("a", user_msg("1", "x"))
        store.append("b", user_msg("2", "y"), is_dm=True)
        assert store.get("a").context.history[0].id == "1"
        assert store.get("b").context.is_dm
        assert not store.get("a").context.is_dm

    def test_pending_batch_skips_bot_and_silent(self):
        store = ConversationStore()
        for message in [user_msg("1", "hi"), bot_msg("2", "yo"), user_msg("3", SILENT), user_msg("4", "bye", author="sam")]:
            store.append("chan", message)
        assert store.get("chan").pending_batch == ["dave: hi", "sam: bye"]

    def test_pending_batch_outlives_the_window(self):
        store = ConversationStore(history_limit=2)
        for i in range(3):
            store.append("chan", user_msg(f"u{i}", f"line {i}"))
            store.append("chan", bot_msg(f"b{i}", "ok"))
        state = store.get("chan")
        assert [m.id for m in state.context.history] == ["u2", "b2"]
        assert state.pending_batch == ["dave: line 0", "dave: line 1", "dave: line 2"]

    def test_dm_flag_survives_lookups_without_it(self):
        store = ConversationStore()
        store.append("dm", user_msg("1", "x"), is_dm=True)
        store.append("dm", bot_msg("2", "y"))
        assert store.state("dm").context.is_dm
        store.append("dm", user_msg("3", "z"), is_dm=False)
        assert not store.get("dm").context.is_dm
