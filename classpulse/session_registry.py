"""In-memory session state: who is in which session and how they feel about it.

Data model:
    _sessions: code -> Session(owner_id, participants{conn_id: level}, created_at)
    _sockets:  conn_id -> SocketEntry(code, role)   # reverse lookup for disconnects

Every method is synchronous and never awaits, so on a single event loop each
mutation is atomic relative to every other one. Failures are reported with
``False``/``None``; nothing here raises for bad client input.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

FEEDBACK_LEVELS = ("gotit", "neutral", "confused", "lost")
DEFAULT_LEVEL = "neutral"

ROLE_TEACHER = "teacher"
ROLE_STUDENT = "student"

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I
CODE_LENGTH = 6


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(raw) -> str:
    """Upper-case and trim a client-supplied code. Non-strings become ''."""
    if not isinstance(raw, str):
        return ""
    return raw.strip().upper()


@dataclass
class Session:
    code: str
    owner_id: str
    participants: dict[str, str] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SocketEntry:
    code: str
    role: str


class SessionRegistry:
    def __init__(self, code_generator: Callable[[], str] = generate_code):
        self._sessions: dict[str, Session] = {}
        self._sockets: dict[str, SocketEntry] = {}
        self._generate_code = code_generator

    @property
    def active_session_count(self) -> int:
        return len(self._sessions)

    def _new_code(self) -> str:
        code = self._generate_code()
        while code in self._sessions:
            logger.debug("Session code collision on %s, retrying", code)
            code = self._generate_code()
        return code

    def _detach(self, conn_id: str, keep_code: str | None = None) -> SocketEntry | None:
        """Drop *conn_id* from whatever session it belongs to, unless that is *keep_code*.

        Returns the entry that was dropped, or None.
        """
        entry = self._sockets.get(conn_id)
        if entry is None or entry.code == keep_code:
            return None
        del self._sockets[conn_id]
        session = self._sessions.get(entry.code)
        if session is not None and entry.role == ROLE_STUDENT:
            session.participants.pop(conn_id, None)
        return entry

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(self, owner_id: str) -> str:
        self._detach(owner_id)
        code = self._new_code()
        self._sessions[code] = Session(code=code, owner_id=owner_id)
        self._sockets[owner_id] = SocketEntry(code, ROLE_TEACHER)
        return code

    def session_exists(self, code: str) -> bool:
        return code in self._sessions

    def get_session(self, code: str) -> Session | None:
        return self._sessions.get(code)

    def end_session(self, code: str) -> bool:
        session = self._sessions.pop(code, None)
        if session is None:
            return False
        for conn_id in [session.owner_id, *session.participants]:
            entry = self._sockets.get(conn_id)
            # The owner may have moved on to a newer session since
            if entry is not None and entry.code == code:
                del self._sockets[conn_id]
        return True

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    def add_student(self, code: str, conn_id: str) -> bool:
        session = self._sessions.get(code)
        if session is None or session.owner_id == conn_id:
            return False
        self._detach(conn_id, keep_code=code)
        session.participants[conn_id] = DEFAULT_LEVEL
        self._sockets[conn_id] = SocketEntry(code, ROLE_STUDENT)
        return True

    def update_feedback(self, code: str, conn_id: str, level: str) -> bool:
        if level not in FEEDBACK_LEVELS:
            return False
        session = self._sessions.get(code)
        if session is None or conn_id not in session.participants:
            return False
        session.participants[conn_id] = level
        return True

    def get_aggregate(self, code: str) -> dict[str, int] | None:
        session = self._sessions.get(code)
        if session is None:
            return None
        counts = dict.fromkeys(FEEDBACK_LEVELS, 0)
        for level in session.participants.values():
            counts[level] += 1
        counts["total"] = len(session.participants)
        return counts

    def lookup(self, conn_id: str) -> SocketEntry | None:
        return self._sockets.get(conn_id)

    def remove_socket(self, conn_id: str) -> SocketEntry | None:
        """Forget a departing connection and report what it was.

        A departing student leaves its session's roster. A departing teacher
        leaves the session running so it can still be ended.
        """
        entry = self._sockets.pop(conn_id, None)
        if entry is None:
            return None
        session = self._sessions.get(entry.code)
        if session is not None and entry.role == ROLE_STUDENT:
            session.participants.pop(conn_id, None)
        return entry
