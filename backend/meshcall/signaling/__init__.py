"""시그널링 모듈.

릴레이 측 룸 레지스트리, 메시지 라우터, 채널 추상화와 와이어 스키마를 제공합니다.

Classes:
    RoomRegistry: 룸 및 멤버십 관리
    Membership: 참가자 데이터 클래스
    SignalingRelay: 시그널링 메시지 라우터
    SignalingChannel: 순서 보장 송신 채널
    WebSocketChannel: FastAPI WebSocket 채널
"""

from .channel import SignalingChannel, WebSocketChannel
from .registry import RoomRegistry, Room, Membership
from .relay import SignalingRelay
from . import schemas

__all__ = [
    "SignalingChannel",
    "WebSocketChannel",
    "RoomRegistry",
    "Room",
    "Membership",
    "SignalingRelay",
    "schemas",
]
