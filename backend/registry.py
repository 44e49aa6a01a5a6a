from typing import Optional


class CapacityExceeded(Exception):
    pass


class SessionAlreadyActive(Exception):
    pass


class SessionRegistry:
    """Process-wide map of session id -> live interview session.

    Only the relay mutates it: one insert when a connection is admitted and
    one removal when that session terminates. The capacity ceiling is the
    service's only admission control.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._sessions: dict = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def is_full(self) -> bool:
        return len(self._sessions) >= self.capacity

    def get(self, session_id: str):
        return self._sessions.get(session_id)

    def active_ids(self) -> list[str]:
        return list(self._sessions)

    def register(self, session_id: str, session) -> None:
        if session_id in self._sessions:
            raise SessionAlreadyActive(session_id)
        if self.is_full:
            raise CapacityExceeded(f"{len(self._sessions)}/{self.capacity} sessions active")
        self._sessions[session_id] = session
        print(f"[Registry] + {session_id} ({len(self._sessions)}/{self.capacity})")

    def remove(self, session_id: str, session: Optional[object] = None) -> bool:
        """Drop a session. Passing the session guards against evicting a newer one."""
        current = self._sessions.get(session_id)
        if current is None:
            return False
        if session is not None and current is not session:
            return False
        del self._sessions[session_id]
        print(f"[Registry] - {session_id} ({len(self._sessions)}/{self.capacity})")
        return True
