"""meshcall 패키지.

풀 메시 WebRTC 그룹 통화를 위한 시그널링 릴레이와 클라이언트 측 피어 연결
관리 모듈을 포함합니다.

Modules:
    signaling: 룸 레지스트리 및 시그널링 릴레이 (서버)
    webrtc: 피어 연결 및 로컬 미디어 트랙 관리 (클라이언트)
    client: 릴레이 클라이언트 및 룸 참가 세션 (클라이언트)
"""

from .errors import (
    MeshCallError,
    PermissionDenied,
    DeviceUnavailable,
    UserCancelled,
    NegotiationError,
    PeerLinkFailure,
    RelayUnreachable,
)
from .signaling import RoomRegistry, SignalingRelay
from .webrtc import PeerConnectionManager, MediaTrackController, PlayerMediaSource
from .client import MeshSession, SignalingClient

__all__ = [
    # Errors
    "MeshCallError",
    "PermissionDenied",
    "DeviceUnavailable",
    "UserCancelled",
    "NegotiationError",
    "PeerLinkFailure",
    "RelayUnreachable",
    # Relay
    "RoomRegistry",
    "SignalingRelay",
    # Client
    "PeerConnectionManager",
    "MediaTrackController",
    "PlayerMediaSource",
    "MeshSession",
    "SignalingClient",
]
