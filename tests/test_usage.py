"""Tests for per-session usage counters."""

from relay.usage import UsageTracker


class TestUsageTracker:
    def test_track_accumulates(self):
        tracker = UsageTracker()
        tracker.track("session-a", 10)
        usage = tracker.track("session-a", 5)

        assert usage.request_count == 2
        assert usage.token_count == 15

    def test_summary(self):
        tracker = UsageTracker()
        tracker.track("a", 10)
        tracker.track("a", 5)
        tracker.track("b", 1)

        assert tracker.summary() == {
            "sessions": 2,
            "totalRequests": 3,
            "totalTokens": 16,
            "averageTokensPerRequest": 5.33,
        }

    def test_empty_summary(self):
        assert UsageTracker().summary()["averageTokensPerRequest"] == 0.0

    def test_details_truncate_session_ids(self):
        tracker = UsageTracker()
        tracker.track("0123456789abcdef", 3)

        [detail] = tracker.details()

        assert detail["sessionId"] == "01234567..."
        assert detail["tokenCount"] == 3
        assert detail["durationMinutes"] == 0

    def test_reset_by_prefix(self):
        tracker = UsageTracker()
        tracker.track("0123456789abcdef", 3)
        tracker.track("fedcba", 1)

        assert tracker.reset("01234567") is True
        assert list(tracker.sessions) == ["fedcba"]
        assert tracker.reset("nope") is False
        assert tracker.reset("") is False

    def test_session_count_is_capped(self):
        tracker = UsageTracker(max_sessions=2)
        tracker.track("a", 1)
        tracker.track("b", 1)
        tracker.track("a", 1)
        tracker.track("c", 1)

        assert list(tracker.sessions) == ["a", "c"]
        assert tracker.sessions["a"].request_count == 2

    def test_reset_all(self):
        tracker = UsageTracker()
        tracker.track("a", 1)
        tracker.reset_all()
        assert tracker.summary()["sessions"] == 0
