"""WebRTC 피어 연결 관리 모듈.

이 모듈은 클라이언트 측에서 원격 참가자별 피어 연결(PeerLink)을 관리합니다.
풀 메시 토폴로지이므로 룸의 다른 참가자 수만큼 연결이 존재합니다.

주요 기능:
    - 원격 참가자 ID별 PeerLink 생성/조회/종료
    - offer/answer 교환과 협상 상태 머신
    - trickle ICE candidate 버퍼링 및 적용
    - 로컬 송신 트랙을 모든 연결에 동일하게 연결 및 교체 (재협상 없음)
    - 연결 이벤트(track, connectionstatechange, icecandidate)를 링크별 큐로 순차 처리

Architecture:
    - Mesh: 각 클라이언트가 다른 모든 참가자와 직접 연결 (서버는 시그널링만 중계)
    - MediaRelay: 로컬 트랙 하나를 여러 연결에 독립 구독으로 송출
    - 링크별 협상 락: 같은 링크의 협상 단계는 겹치지 않음, 링크 간은 병렬

WebRTC Flow:
    1. (offerer) create_offer(): 송신 트랙 연결 → offer 생성 → offer 전송
    2. (answerer) handle_offer(): 송신 트랙 연결 → remote 설정 → answer 생성 → answer 전송
    3. (offerer) handle_answer(): remote 설정 → CONNECTED
    4. 양쪽: add_ice_candidate(): remote description 전이면 버퍼, 이후 바로 적용

Examples:
    >>> manager = PeerConnectionManager(media, send_signal)
    >>> manager.ensure_link("peer-456")
    >>> await manager.create_offer("peer-456")
    >>> await manager.handle_answer("peer-456", {"type": "answer", "sdp": "..."})
    >>> await manager.close_link("peer-456")

See Also:
    media.py: 로컬 송신 트랙 관리
    aiortc Documentation: https://aiortc.readthedocs.io/
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription

from ..config import connection_config, ice_config
from ..errors import NegotiationError, PeerLinkFailure
from ..signaling import schemas
from .media import MediaTrackController
from .peer_link import LinkState, PeerLink, candidate_to_dict, parse_candidate

logger = logging.getLogger(__name__)

SignalSender = Callable[[str, dict], Awaitable[None]]


def default_peer_connection_factory() -> RTCPeerConnection:
    """설정된 STUN 서버로 RTCPeerConnection을 생성합니다."""
    return RTCPeerConnection(configuration=ice_config.rtc_configuration())


def _session_description(sdp: Any) -> RTCSessionDescription:
    if not isinstance(sdp, dict):
        raise NegotiationError("session description must be an object")
    try:
        return RTCSessionDescription(sdp=sdp["sdp"], type=sdp["type"])
    except (KeyError, ValueError) as e:
        raise NegotiationError(f"invalid session description: {e}") from e


def _description_to_dict(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


class PeerConnectionManager:
    """원격 참가자별 PeerLink를 관리하는 클래스.

    Attributes:
        media (MediaTrackController): 로컬 송신 트랙 제공자
        links (Dict[str, PeerLink]): 원격 참가자 ID → PeerLink
        on_remote_track_callback: async (participant_id, track) - 원격 트랙 수신
        on_link_closed_callback: async (participant_id) - 링크 종료
        on_link_failed_callback: async (participant_id, PeerLinkFailure) - 전송 실패

    Invariants:
        - 원격 참가자 ID당 PeerLink는 최대 하나
        - 링크마다 종류별 송신 트랙은 최대 하나
        - 모든 링크의 비디오 송신 소스는 동일
    """

    def __init__(
        self,
        media: MediaTrackController,
        send_signal: SignalSender,
        pc_factory: Callable[[], RTCPeerConnection] = default_peer_connection_factory,
        negotiation_timeout: float = connection_config.NEGOTIATION_TIMEOUT,
    ):
        self.media = media
        self.send_signal = send_signal
        self.pc_factory = pc_factory
        self.negotiation_timeout = negotiation_timeout

        # participant_id -> PeerLink
        self.links: Dict[str, PeerLink] = {}
        # close_all 이후 reopen 전까지 새 링크를 만들지 않음
        self.closed = False

        self.on_remote_track_callback: Optional[Callable[[str, MediaStreamTrack], Awaitable[None]]] = None
        self.on_link_closed_callback: Optional[Callable[[str], Awaitable[None]]] = None
        self.on_link_failed_callback: Optional[Callable[[str, PeerLinkFailure], Awaitable[None]]] = None

        self.media.add_listener(self._on_outbound_track_changed)

    def get_link(self, participant_id: str) -> Optional[PeerLink]:
        return self.links.get(participant_id)

    def reopen(self) -> None:
        """close_all 이후 다시 링크를 만들 수 있게 합니다. 룸에 참가할 때 호출됩니다."""
        self.closed = False

    def ensure_link(self, participant_id: str) -> Optional[PeerLink]:
        """PeerLink를 조회하거나 새로 생성합니다.

        연결 객체를 만들고 이벤트 핸들러를 등록합니다. 핸들러는 이벤트를
        링크의 큐에 넣기만 하고, 처리는 링크별 펌프 태스크가 하나씩 수행합니다.

        Args:
            participant_id: 원격 참가자 ID

        Returns:
            Optional[PeerLink]: 기존 또는 새 링크. 관리자가 닫힌 뒤에는 None
        """
        link = self.links.get(participant_id)
        if link is not None:
            return link
        if self.closed:
            logger.debug(f"[WebRTC] 종료 중, 피어 {participant_id[:8]} 링크 생성 거부")
            return None

        pc = self.pc_factory()
        link = PeerLink(participant_id, pc)
        self.links[participant_id] = link

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            link.push_event("track", track)

        @pc.on("connectionstatechange")
        def on_connection_state_change():
            link.push_event("connectionstatechange", pc.connectionState)

        @pc.on("icecandidate")
        def on_ice_candidate(candidate):
            link.push_event("icecandidate", candidate)

        link.spawn(self._pump_events(link))
        logger.info(f"[WebRTC] 피어 링크 생성: {participant_id[:8]} (총 {len(self.links)}개)")
        return link

    # ------------------------------------------------------------
    # 협상
    # ------------------------------------------------------------

    async def create_offer(self, participant_id: str) -> None:
        """원격 참가자에게 offer를 보냅니다 (offerer 역할).

        Note:
            - NEW 또는 CONNECTED(재협상) 상태에서만 동작
            - 송신 트랙 연결은 멱등이므로 반복 호출해도 트랙이 중복되지 않음
        """
        link = self.ensure_link(participant_id)
        if link is None:
            return
        async with link.negotiation_lock:
            if link.state not in (LinkState.NEW, LinkState.CONNECTED):
                logger.warning(f"[WebRTC] offer 생략: {link}")
                return

            self._attach_outbound_tracks(link)
            try:
                offer = await link.pc.createOffer()
                await link.pc.setLocalDescription(offer)
            except Exception as e:
                logger.error(f"[WebRTC] 피어 {participant_id[:8]} offer 생성 실패: {e}")
                return
            if not link.active:
                return

            link.transition(LinkState.HAVE_LOCAL_OFFER)
            await self.send_signal(schemas.OFFER, {
                "to": participant_id,
                "sdp": _description_to_dict(link.pc.localDescription),
            })
            logger.info(f"[WebRTC] 피어 {participant_id[:8]}에게 offer 전송")

            if self.negotiation_timeout > 0:
                link.spawn(self._expire_offer(link))

    async def handle_offer(self, participant_id: str, sdp: Any) -> None:
        """원격 offer를 처리하고 answer를 보냅니다 (answerer 역할).

        링크가 없으면 먼저 생성합니다.

        Workflow:
            1. 송신 트랙 연결
            2. Remote Description 설정 (offer) → HAVE_REMOTE_OFFER
            3. 버퍼된 candidate 적용
            4. Answer 생성 및 Local Description 설정 → CONNECTED
            5. answer 전송
        """
        link = self.ensure_link(participant_id)
        if link is None:
            return
        async with link.negotiation_lock:
            if link.state == LinkState.HAVE_LOCAL_OFFER:
                # 새 참가자만 offer 하므로 발생하지 않아야 함
                logger.warning(f"[WebRTC] glare: {link} 상태에서 offer 수신, 무시")
                return
            if not link.active:
                return
            renegotiation = link.state == LinkState.CONNECTED

            try:
                description = _session_description(sdp)
            except NegotiationError as e:
                logger.warning(f"[WebRTC] 피어 {participant_id[:8]} offer 무시: {e}")
                return

            self._attach_outbound_tracks(link)
            try:
                await link.pc.setRemoteDescription(description)
            except Exception as e:
                logger.error(f"[WebRTC] 피어 {participant_id[:8]} remote description 설정 실패: {e}")
                return
            if not link.active:
                return

            link.remote_description_set = True
            if not renegotiation:
                link.transition(LinkState.HAVE_REMOTE_OFFER)
            await self._flush_candidates(link)

            try:
                answer = await link.pc.createAnswer()
                await link.pc.setLocalDescription(answer)
            except Exception as e:
                logger.error(f"[WebRTC] 피어 {participant_id[:8]} answer 생성 실패: {e}")
                return
            if not link.active:
                return

            link.transition(LinkState.CONNECTED)
            await self.send_signal(schemas.ANSWER, {
                "to": participant_id,
                "sdp": _description_to_dict(link.pc.localDescription),
            })
            logger.info(f"[WebRTC] 피어 {participant_id[:8]}에게 answer 전송")

    async def handle_answer(self, participant_id: str, sdp: Any) -> None:
        """원격 answer를 적용합니다."""
        link = self.links.get(participant_id)
        if link is None:
            logger.debug(f"[WebRTC] 알 수 없는 피어 {participant_id[:8]}의 answer 무시")
            return

        async with link.negotiation_lock:
            if link.state != LinkState.HAVE_LOCAL_OFFER:
                logger.warning(f"[WebRTC] {link} 상태에서 answer 수신, 무시")
                return

            try:
                await link.pc.setRemoteDescription(_session_description(sdp))
            except Exception as e:
                logger.error(f"[WebRTC] 피어 {participant_id[:8]} answer 적용 실패: {e}")
                return
            if not link.active:
                return

            link.remote_description_set = True
            link.transition(LinkState.CONNECTED)
            await self._flush_candidates(link)

    async def add_ice_candidate(self, participant_id: str, candidate: Any) -> None:
        """원격 ICE candidate를 적용합니다.

        Best-effort: 형식 오류나 거부된 후보는 로그만 남기고 버립니다.
        remote description 이전에 도착한 후보는 버퍼에 두었다가 도착 순서대로
        적용합니다.
        """
        link = self.links.get(participant_id)
        if link is None or not link.active:
            logger.debug(f"[WebRTC] 피어 {participant_id[:8]} 링크 없음, candidate 무시")
            return

        try:
            ice_candidate = parse_candidate(candidate)
        except NegotiationError as e:
            logger.warning(f"[WebRTC] 피어 {participant_id[:8]} candidate 버림: {e}")
            return
        if ice_candidate is None:
            return

        if not link.remote_description_set or link.flushing:
            link.pending_candidates.append(ice_candidate)
            logger.debug(f"[WebRTC] 피어 {participant_id[:8]} candidate 버퍼 ({len(link.pending_candidates)})")
            return

        await self._apply_candidate(link, ice_candidate)

    async def _flush_candidates(self, link: PeerLink) -> None:
        link.flushing = True
        try:
            while link.pending_candidates and link.active:
                await self._apply_candidate(link, link.pending_candidates.pop(0))
        finally:
            link.flushing = False

    async def _apply_candidate(self, link: PeerLink, candidate) -> None:
        try:
            await link.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(f"[WebRTC] 피어 {link.participant_id[:8]} candidate 거부됨: {e}")

    async def _expire_offer(self, link: PeerLink) -> None:
        await asyncio.sleep(self.negotiation_timeout)
        if link.state == LinkState.HAVE_LOCAL_OFFER:
            await self._fail_link(link, f"no answer within {self.negotiation_timeout}s")

    # ------------------------------------------------------------
    # 송신 트랙
    # ------------------------------------------------------------

    def _attach_outbound_tracks(self, link: PeerLink) -> None:
        """현재 활성 송신 트랙을 링크에 연결합니다 (종류당 하나, 멱등)."""
        for kind, source in self.media.outbound_tracks().items():
            if source is not None:
                self._bind_source(link, kind, source)

    def _bind_source(self, link: PeerLink, kind: str, source: MediaStreamTrack) -> None:
        if link.outbound_sources.get(kind) is source:
            return

        proxy = self.media.subscribe(source)
        sender = link.senders.get(kind)
        if sender is not None:
            # 협상된 송신 슬롯은 그대로 두고 소스만 교체
            sender.replaceTrack(proxy)
        else:
            link.senders[kind] = link.pc.addTrack(proxy)

        previous = link.outbound_proxies.get(kind)
        link.outbound_sources[kind] = source
        link.outbound_proxies[kind] = proxy
        if previous is not None:
            previous.stop()
        logger.debug(f"[WebRTC] 피어 {link.participant_id[:8]} {kind} 송신 소스: {source.id}")

    def _on_outbound_track_changed(self, kind: str, source: MediaStreamTrack) -> None:
        """MediaTrackController 리스너: 송신자가 있는 모든 링크의 트랙을 교체합니다.

        중간에 await가 없으므로 호출 시점의 링크 전체에 원자적으로 적용됩니다.
        """
        replaced = 0
        for link in list(self.links.values()):
            if link.active and kind in link.senders:
                self._bind_source(link, kind, source)
                replaced += 1
        logger.info(f"[WebRTC] {kind} 송신 트랙 교체: 링크 {replaced}개")

    def outbound_source(self, participant_id: str, kind: str) -> Optional[MediaStreamTrack]:
        """링크가 현재 송출 중인 소스 트랙."""
        link = self.links.get(participant_id)
        return link.outbound_sources.get(kind) if link else None

    # ------------------------------------------------------------
    # 연결 이벤트
    # ------------------------------------------------------------

    async def _pump_events(self, link: PeerLink) -> None:
        """링크의 연결 이벤트를 하나씩 처리합니다."""
        while True:
            event, payload = await link.events.get()
            try:
                await self._handle_event(link, event, payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[WebRTC] 피어 {link.participant_id[:8]} {event} 처리 오류: {e}", exc_info=True)

    async def _handle_event(self, link: PeerLink, event: str, payload: Any) -> None:
        participant_id = link.participant_id

        if event == "track":
            track: MediaStreamTrack = payload
            link.remote_tracks.append(track)
            logger.info(f"[WebRTC] 피어 {participant_id[:8]} {track.kind} 트랙 수신")
            if self.on_remote_track_callback:
                await self.on_remote_track_callback(participant_id, track)

        elif event == "connectionstatechange":
            logger.info(f"[WebRTC] 피어 {participant_id[:8]} 연결 상태: {payload}")
            if payload == "failed":
                await self._fail_link(link, "transport failed")

        elif event == "icecandidate":
            if payload is None:
                return
            await self.send_signal(schemas.ICE_CANDIDATE, {
                "to": participant_id,
                "candidate": candidate_to_dict(payload),
            })

    async def _fail_link(self, link: PeerLink, reason: str) -> None:
        if not link.active:
            return
        link.transition(LinkState.FAILED)
        failure = PeerLinkFailure(link.participant_id, reason)
        logger.warning(f"[WebRTC] {failure}")
        if self.on_link_failed_callback:
            await self.on_link_failed_callback(link.participant_id, failure)

    # ------------------------------------------------------------
    # 종료
    # ------------------------------------------------------------

    async def close_link(self, participant_id: str) -> None:
        """피어 링크를 닫고 관련 리소스를 정리합니다.

        Cleanup Steps:
            1. links에서 제거, 상태 CLOSED
            2. 진행 중인 협상/이벤트 태스크 취소
            3. 송신 구독 트랙 중지
            4. RTCPeerConnection 종료
            5. on_link_closed_callback 호출

        Note:
            - 존재하지 않는 링크로 호출해도 안전함 (두 번째 호출은 무시)
        """
        link = self.links.pop(participant_id, None)
        if link is None:
            return

        link.transition(LinkState.CLOSED)
        link.cancel_tasks()
        for proxy in link.outbound_proxies.values():
            proxy.stop()
        link.outbound_proxies.clear()

        try:
            await link.pc.close()
        except Exception as e:
            logger.warning(f"[WebRTC] 피어 {participant_id[:8]} 연결 종료 중 오류: {e}")

        logger.info(f"[WebRTC] 피어 {participant_id[:8]} 연결 종료 (남은 링크 {len(self.links)}개)")
        if self.on_link_closed_callback:
            await self.on_link_closed_callback(participant_id)

    async def close_all(self) -> None:
        """모든 링크를 닫습니다. 룸을 떠날 때 호출됩니다.

        이후 reopen 전까지 ensure_link는 새 링크를 만들지 않습니다.
        """
        self.closed = True
        while self.links:
            await self.close_link(next(iter(self.links)))
