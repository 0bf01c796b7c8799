"""클라이언트 모듈.

릴레이 WebSocket 클라이언트와 룸 참가 세션을 제공합니다.

Classes:
    SignalingClient: 릴레이 WebSocket 채널
    MeshSession: 룸 참가 수명 주기 조율
"""

from .signaling_client import SignalingClient
from .session import MeshSession

__all__ = [
    "SignalingClient",
    "MeshSession",
]
