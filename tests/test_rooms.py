from __future__ import annotations

import pytest

from models.errors import InvalidSessionIdError
from models.session import Role
from service.rooms import RoomRegistry, validate_session_id


def test_created_sessions_are_numeric_initiators() -> None:
    registry = RoomRegistry()
    for _ in range(20):
        session = registry.create_session()
        assert session.role == Role.INITIATOR
        assert session.is_initiator
        assert len(session.id) == 6
        assert session.id.isdigit()


def test_join_assigns_joiner_without_existence_check() -> None:
    session = RoomRegistry().join_session(" 482913 ")
    assert session.id == "482913"
    assert session.role == Role.JOINER
    assert not session.is_initiator


@pytest.mark.parametrize("session_id", ["", "a b", "x" * 65, "../etc", 482913, None])
def test_invalid_session_ids_are_rejected(session_id) -> None:
    with pytest.raises(InvalidSessionIdError):
        validate_session_id(session_id)


def test_invalid_session_id_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        RoomRegistry().join_session("not valid!")


def test_digits_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RoomRegistry(digits=0)
    assert len(RoomRegistry(digits=4).create_session().id) == 4
