# models/signaling.py
import json
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from models.errors import SignalingDecodeError


class MessageKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    PING = "ping"
    DISCONNECT = "disconnect"


class SessionDescriptionPayload(BaseModel):
    sdp: str
    type: str


class CandidatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")


class PingPayload(BaseModel):
    message: str = "Looking to connect"


_PAYLOAD_MODELS = {
    MessageKind.OFFER: SessionDescriptionPayload,
    MessageKind.ANSWER: SessionDescriptionPayload,
    MessageKind.CANDIDATE: CandidatePayload,
    MessageKind.PING: PingPayload,
}


def now_ms() -> int:
    return int(time.time() * 1000)


class SignalingMessage(BaseModel):
    """Signaling envelope exchanged between the two parties of a session.

    Field names follow the JSON wire format (``type``, ``sessionId``,
    ``time``, ``messageId``); Python code uses the snake_case attributes.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: MessageKind = Field(alias="type")
    payload: Union[SessionDescriptionPayload, CandidatePayload, PingPayload, None] = None
    session_id: str = Field(alias="sessionId", min_length=1)
    sent_at: int = Field(default_factory=now_ms, alias="time")
    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex, alias="messageId")
    sender_id: Optional[str] = Field(default=None, alias="senderId")

    @classmethod
    def build(cls, kind: MessageKind, session_id: str, payload: Any = None,
              sender_id: Optional[str] = None) -> "SignalingMessage":
        return cls(kind=kind, session_id=session_id, payload=payload, sender_id=sender_id)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def decode_message(raw: Union[str, bytes, Dict[str, Any]]) -> SignalingMessage:
    """Parses a wire message, validating the payload against its kind."""
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else dict(raw)
    except (json.JSONDecodeError, TypeError, ValueError) as exc:
        raise SignalingDecodeError(f"Malformed signaling message: {exc}") from exc
    if not isinstance(data, dict):
        raise SignalingDecodeError(f"Signaling message must be a JSON object, got {type(data).__name__}")

    try:
        kind = MessageKind(data.get("type"))
        payload_model = _PAYLOAD_MODELS.get(kind)
        raw_payload = data.get("payload")
        if payload_model is None:
            payload = None
        elif kind == MessageKind.PING and raw_payload is None:
            payload = PingPayload()
        else:
            payload = payload_model.model_validate(raw_payload)
        return SignalingMessage.model_validate({**data, "type": kind, "payload": payload})
    except (ValueError, ValidationError) as exc:
        raise SignalingDecodeError(f"Invalid signaling message: {exc}") from exc


class IceServer(BaseModel):
    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None


class IceConfig(BaseModel):
    ice_servers: List[IceServer] = []


class SessionInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    role: str


class PublishResult(BaseModel):
    status: str
    cursor: int


class MessagePage(BaseModel):
    messages: List[Dict[str, Any]]
    cursor: int


class SignalingStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    message_count: int
    kinds: Dict[str, int]
    last_activity: Optional[int] = None
