# service/rooms.py
import logging
import re
import secrets

from models.errors import InvalidSessionIdError
from models.session import Role, Session

logger = logging.getLogger("rooms")

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_session_id(session_id) -> str:
    if not isinstance(session_id, str):
        raise InvalidSessionIdError(f"Session id must be a string, got {type(session_id).__name__}")
    session_id = session_id.strip()
    if not _SESSION_ID_RE.match(session_id):
        raise InvalidSessionIdError(f"Invalid session id {session_id!r}")
    return session_id


class RoomRegistry:
    """Issues session identifiers and assigns the two negotiation roles.

    Identifiers come from a space of ``10 ** digits`` values. Joining never
    checks that a session exists and collisions are not detected; a session
    nobody created simply never receives any signaling.
    """

    def __init__(self, digits: int = 6):
        if digits < 1:
            raise ValueError("digits must be positive")
        self.digits = digits

    def create_session(self) -> Session:
        session_id = str(secrets.randbelow(10 ** self.digits)).zfill(self.digits)
        logger.info(f"Created room: {session_id}")
        return Session(session_id, Role.INITIATOR)

    def join_session(self, session_id: str) -> Session:
        session_id = validate_session_id(session_id)
        logger.info(f"Joining room: {session_id}")
        return Session(session_id, Role.JOINER)
