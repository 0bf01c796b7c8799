"""WebRTC 모듈.

피어 연결 관리, 로컬 미디어 트랙 관리 기능을 제공합니다.

Classes:
    PeerConnectionManager: 원격 참가자별 피어 연결 관리 (풀 메시)
    PeerLink: 원격 참가자 한 명과의 연결 상태
    MediaTrackController: 로컬 송신 트랙 및 화면 공유 관리
    PlayerMediaSource: aiortc MediaPlayer 기반 로컬 미디어 획득
    ToggleableTrack: 송출 on/off 가능한 로컬 트랙
"""

from .tracks import ToggleableTrack
from .media import (
    LocalMediaStream,
    MediaSource,
    MediaTrackController,
    PlayerMediaSource,
    VideoSource,
)
from .peer_link import LinkState, PeerLink, parse_candidate, candidate_to_dict
from .peer_manager import PeerConnectionManager

__all__ = [
    "ToggleableTrack",
    "LocalMediaStream",
    "MediaSource",
    "MediaTrackController",
    "PlayerMediaSource",
    "VideoSource",
    "LinkState",
    "PeerLink",
    "parse_candidate",
    "candidate_to_dict",
    "PeerConnectionManager",
]
