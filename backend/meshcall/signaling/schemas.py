"""시그널링 메시지 스키마.

모든 메시지는 ``{"type": <메시지 타입>, "data": {...}}`` 형태의 JSON 봉투로
전송됩니다. 필드 이름(camelCase)은 서로 독립적으로 구현된 클라이언트와
릴레이 간 호환을 위해 고정입니다.

릴레이는 봉투 형태만 검사하며 SDP/candidate 내용은 해석하지 않습니다.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================
# 메시지 타입
# ============================================================

JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
EXISTING_USERS = "existing-users"
USER_JOINED = "user-joined"
USER_LEFT = "user-left"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
CHAT_MESSAGE = "chat-message"
WELCOME = "welcome"
GET_ROOMS = "get-rooms"
ROOMS_LIST = "rooms-list"
ERROR = "error"

# to 필드로 특정 참가자에게 전달되는 메시지
DIRECT_TYPES = (OFFER, ANSWER, ICE_CANDIDATE)


class _WireModel(BaseModel):
    """camelCase 별칭을 사용하는 기본 모델."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Envelope(BaseModel):
    """시그널링 메시지 봉투."""

    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


# ============================================================
# client → relay
# ============================================================

class JoinRoom(_WireModel):
    room_id: str = Field(alias="roomId", min_length=1)
    display_name: str = Field(default="Anonymous", alias="displayName")


class LeaveRoom(_WireModel):
    room_id: Optional[str] = Field(default=None, alias="roomId")


class DirectMessage(_WireModel):
    """offer / answer / ice-candidate 공통 형태.

    sdp, candidate는 불투명 페이로드로 그대로 전달됩니다.
    """

    to: str = Field(min_length=1)
    sdp: Optional[Any] = None
    candidate: Optional[Any] = None


class ChatMessage(_WireModel):
    room_id: Optional[str] = Field(default=None, alias="roomId")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    message: str


# ============================================================
# relay → client
# ============================================================

class Welcome(_WireModel):
    participant_id: str = Field(alias="participantId")


class ExistingUsers(_WireModel):
    participants: List[str] = Field(default_factory=list)


class UserJoined(_WireModel):
    participant_id: str = Field(alias="participantId")
    display_name: str = Field(default="Anonymous", alias="displayName")


class UserLeft(_WireModel):
    participant_id: str = Field(alias="participantId")
    display_name: Optional[str] = Field(default=None, alias="displayName")


class ForwardedMessage(_WireModel):
    """릴레이가 발신자 ID를 붙여 전달한 offer / answer / ice-candidate."""

    from_: str = Field(alias="from")
    sdp: Optional[Any] = None
    candidate: Optional[Any] = None


class ChatBroadcast(_WireModel):
    display_name: str = Field(alias="displayName")
    message: str
    timestamp: int


class ErrorMessage(_WireModel):
    message: str


def envelope(message_type: str, payload: Optional[_WireModel] = None) -> Dict[str, Any]:
    """전송용 봉투 딕셔너리를 만듭니다."""
    return {"type": message_type, "data": payload.to_wire() if payload is not None else {}}
