"""피어 링크 모듈.

원격 참가자 한 명과의 직접 연결 상태를 담는 PeerLink와 협상 상태 머신,
ICE candidate 변환 함수를 제공합니다.

State Machine:
    NEW → HAVE_LOCAL_OFFER | HAVE_REMOTE_OFFER → CONNECTED → CLOSED
    (CLOSED가 아닌 모든 상태에서 전송 실패 시 FAILED)
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Coroutine, Dict, List, Optional, Set

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCPeerConnection, RTCRtpSender
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import NegotiationError

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    """PeerLink 협상 상태."""
    NEW = "new"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


class PeerLink:
    """원격 참가자 한 명과의 연결.

    PeerConnectionManager만 생성/소유하며, 원격 참가자가 나가거나 로컬
    클라이언트가 룸을 떠나면 닫힙니다.

    Attributes:
        participant_id (str): 원격 참가자 ID
        pc (RTCPeerConnection): 하위 연결 객체
        state (LinkState): 협상 상태
        pending_candidates (List[RTCIceCandidate]): remote description 이전에 도착한 후보
        remote_description_set (bool): remote description 설정 여부
        negotiation_lock (asyncio.Lock): 협상 단계 직렬화 락
        events (asyncio.Queue): 연결 객체 이벤트 큐 (하나씩 처리)
        tasks (Set[asyncio.Task]): 이 링크에서 진행 중인 태스크
        senders (Dict[str, RTCRtpSender]): 종류별 송신자
        outbound_sources (Dict[str, MediaStreamTrack]): 종류별 송출 소스 트랙
        outbound_proxies (Dict[str, MediaStreamTrack]): 송신자에 붙은 구독 트랙
        remote_tracks (List[MediaStreamTrack]): 수신한 원격 트랙
    """

    def __init__(self, participant_id: str, pc: RTCPeerConnection):
        self.participant_id = participant_id
        self.pc = pc
        self.state = LinkState.NEW

        self.pending_candidates: List[RTCIceCandidate] = []
        self.remote_description_set = False
        self.flushing = False

        self.negotiation_lock = asyncio.Lock()
        self.events: asyncio.Queue = asyncio.Queue()
        self.tasks: Set[asyncio.Task] = set()

        self.senders: Dict[str, RTCRtpSender] = {}
        self.outbound_sources: Dict[str, MediaStreamTrack] = {}
        self.outbound_proxies: Dict[str, MediaStreamTrack] = {}
        self.remote_tracks: List[MediaStreamTrack] = []

    def __repr__(self) -> str:
        return f"PeerLink({self.participant_id[:8]}, {self.state.value})"

    @property
    def closed(self) -> bool:
        return self.state == LinkState.CLOSED

    @property
    def active(self) -> bool:
        """협상을 계속할 수 있는 상태인지 여부."""
        return self.state not in (LinkState.CLOSED, LinkState.FAILED)

    def transition(self, new_state: LinkState) -> None:
        if self.closed:
            return
        if self.state == LinkState.FAILED and new_state != LinkState.CLOSED:
            return
        old_state = self.state
        self.state = new_state
        logger.info(f"[WebRTC] 피어 {self.participant_id[:8]} 상태: {old_state.value} -> {new_state.value}")

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """링크에 묶인 태스크를 시작합니다. 링크가 닫히면 함께 취소됩니다."""
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self.tasks):
            if task is not current and not task.done():
                task.cancel()

    def push_event(self, event: str, payload: Any = None) -> None:
        if self.closed:
            return
        self.events.put_nowait((event, payload))


def parse_candidate(data: Any) -> Optional[RTCIceCandidate]:
    """시그널링으로 받은 candidate를 RTCIceCandidate로 변환합니다.

    브라우저 RTCIceCandidateInit 형식({"candidate", "sdpMid", "sdpMLineIndex"})과
    candidate 문자열을 모두 받습니다.

    Returns:
        Optional[RTCIceCandidate]: 변환 결과. 후보 종료 표시이면 None

    Raises:
        NegotiationError: 형식이 잘못된 경우
    """
    if data is None:
        return None

    if isinstance(data, dict):
        candidate_str = data.get("candidate") or ""
        sdp_mid = data.get("sdpMid")
        sdp_mline_index = data.get("sdpMLineIndex")
    elif isinstance(data, str):
        candidate_str = data
        sdp_mid = None
        sdp_mline_index = 0
    else:
        raise NegotiationError(f"unsupported candidate payload: {type(data).__name__}")

    if not isinstance(candidate_str, str):
        raise NegotiationError("candidate must be a string")
    if not candidate_str:
        return None

    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[10:]

    try:
        candidate = candidate_from_sdp(candidate_str)
    except (AssertionError, ValueError, IndexError) as e:
        raise NegotiationError(f"malformed candidate: {candidate_str!r}") from e

    candidate.sdpMid = sdp_mid
    candidate.sdpMLineIndex = sdp_mline_index
    if candidate.sdpMid is None and candidate.sdpMLineIndex is None:
        candidate.sdpMLineIndex = 0
    return candidate


def candidate_to_dict(candidate: RTCIceCandidate) -> dict:
    """로컬 candidate를 브라우저 호환 딕셔너리로 변환합니다."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }
