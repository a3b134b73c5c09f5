# models/session.py
from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    INITIATOR = "initiator"
    JOINER = "joiner"


@dataclass(frozen=True)
class Session:
    id: str
    role: Role

    @property
    def is_initiator(self) -> bool:
        return self.role == Role.INITIATOR
