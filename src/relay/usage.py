"""
Per-session usage counters.

In-memory only; counters vanish with the process. Token numbers are whatever
the backend reported, or ~4 chars/token estimates for streamed calls.
"""

import logging
import os
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Session ids come from callers, so the map is bounded; the idlest session goes first
MAX_SESSIONS = int(os.environ.get("RELAY_MAX_SESSIONS", "1000"))


@dataclass
class SessionUsage:
    start_time: float = field(default_factory=time.time)
    last_request_time: float = field(default_factory=time.time)
    request_count: int = 0
    token_count: int = 0


class UsageTracker:
    """Request and token counts, keyed by session id."""

    def __init__(self, max_sessions: int = MAX_SESSIONS):
        self.max_sessions = max_sessions
        self.sessions: dict[str, SessionUsage] = {}  # session_id → counters

    def track(self, session_id: str, tokens: int) -> SessionUsage:
        usage = self.sessions.pop(session_id, None)
        if usage is None:
            self._make_room()
            usage = SessionUsage()
        # Dict order doubles as recency order
        self.sessions[session_id] = usage
        usage.request_count += 1
        usage.token_count += tokens
        usage.last_request_time = time.time()
        return usage

    def _make_room(self) -> None:
        while self.sessions and len(self.sessions) >= self.max_sessions:
            idlest = next(iter(self.sessions))
            del self.sessions[idlest]
            logger.info(f"Usage for session {idlest[:8]} evicted (limit {self.max_sessions})")

    def summary(self) -> dict:
        total_requests = sum(u.request_count for u in self.sessions.values())
        total_tokens = sum(u.token_count for u in self.sessions.values())
        average = total_tokens / total_requests if total_requests else 0.0
        return {
            "sessions": len(self.sessions),
            "totalRequests": total_requests,
            "totalTokens": total_tokens,
            "averageTokensPerRequest": round(average, 2),
        }

    def details(self) -> list[dict]:
        now = time.time()
        return [
            {
                "sessionId": session_id[:8] + "...",
                "startTime": usage.start_time,
                "lastRequestTime": usage.last_request_time,
                "requestCount": usage.request_count,
                "tokenCount": usage.token_count,
                "durationMinutes": round((now - usage.start_time) / 60),
            }
            for session_id, usage in self.sessions.items()
        ]

    def reset(self, session_prefix: str) -> bool:
        """Drop the first session whose id starts with the given prefix."""
        if not session_prefix:
            return False
        for session_id in self.sessions:
            if session_id.startswith(session_prefix):
                del self.sessions[session_id]
                return True
        return False

    def reset_all(self) -> None:
        self.sessions.clear()
