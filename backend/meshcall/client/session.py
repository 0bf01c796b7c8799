"""메시 통화 세션 모듈.

클라이언트 한 명의 룸 참가 수명 주기를 조율합니다. 로컬 미디어를 먼저
획득하고, 릴레이에 연결한 뒤, 시그널링 메시지에 따라 피어 링크를 만들고
닫습니다.

Join Flow:
    1. 로컬 미디어 획득 (PermissionDenied는 즉시 실패)
    2. 릴레이 연결 (RelayUnreachable은 즉시 실패)
    3. join-room 전송
    4. existing-users: 나열된 모든 참가자에게 링크 생성 후 offer
    5. user-joined: 링크만 미리 생성하고 상대의 offer를 기다림
    6. user-left: 해당 링크 종료

새로 들어온 쪽만 offer 하므로 두 참가자가 서로 동시에 offer 하는 상황이
생기지 않습니다.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection

from ..config import connection_config
from ..errors import MeshCallError, PeerLinkFailure, RelayUnreachable
from ..signaling import schemas
from ..webrtc.media import MediaTrackController, PlayerMediaSource
from ..webrtc.peer_manager import PeerConnectionManager, default_peer_connection_factory
from .signaling_client import SignalingClient

logger = logging.getLogger(__name__)


class MeshSession:
    """룸 하나에 참가한 클라이언트 세션.

    Attributes:
        signaling (SignalingClient): 릴레이 채널
        media (MediaTrackController): 로컬 미디어 상태
        peers (PeerConnectionManager): 원격 참가자별 피어 링크
        participant_id (Optional[str]): 릴레이가 발급한 내 참가자 ID
        room_id (Optional[str]): 참가 중인 룸
        display_name (str): 표시 이름
        joined (bool): 참가 중 여부

    Callbacks:
        on_remote_track: async (participant_id, track)
        on_remote_left: async (participant_id)
        on_chat_message: async (display_name, message, timestamp)
        on_link_failed: async (participant_id, PeerLinkFailure)
        on_disconnected: async (RelayUnreachable) - 릴레이 연결 끊김

    Examples:
        >>> session = MeshSession.create("ws://localhost:8000/ws")
        >>> await session.join("room-1", "alice")
        >>> await session.send_chat("hello")
        >>> await session.start_screen_share()
        >>> await session.leave()
    """

    def __init__(
        self,
        signaling: SignalingClient,
        media: MediaTrackController,
        pc_factory: Callable[[], RTCPeerConnection] = default_peer_connection_factory,
        negotiation_timeout: float = connection_config.NEGOTIATION_TIMEOUT,
    ):
        self.signaling = signaling
        self.media = media
        self.peers = PeerConnectionManager(
            media, self._send_signal, pc_factory=pc_factory, negotiation_timeout=negotiation_timeout
        )

        self.participant_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.display_name = "Anonymous"
        self.joined = False

        self.on_remote_track: Optional[Callable[[str, MediaStreamTrack], Awaitable[None]]] = None
        self.on_remote_left: Optional[Callable[[str], Awaitable[None]]] = None
        self.on_chat_message: Optional[Callable[[str, str, int], Awaitable[None]]] = None
        self.on_link_failed: Optional[Callable[[str, PeerLinkFailure], Awaitable[None]]] = None
        self.on_disconnected: Optional[Callable[[RelayUnreachable], Awaitable[None]]] = None

        self.peers.on_remote_track_callback = self._on_remote_track
        self.peers.on_link_closed_callback = self._on_link_closed
        self.peers.on_link_failed_callback = self._on_link_failed

        self._receive_task: Optional[asyncio.Task] = None

    @classmethod
    def create(cls, relay_url: str, media_file: Optional[str] = None,
               screen_file: Optional[str] = None) -> "MeshSession":
        """기본 구성(로컬 장치 또는 미디어 파일)으로 세션을 만듭니다."""
        source = PlayerMediaSource(media_file=media_file, screen_file=screen_file)
        return cls(SignalingClient(relay_url), MediaTrackController(source))

    # ------------------------------------------------------------
    # 참가 / 퇴장
    # ------------------------------------------------------------

    async def join(self, room_id: str, display_name: str = "Anonymous") -> None:
        """룸에 참가합니다.

        Raises:
            PermissionDenied: 로컬 미디어 접근 거부
            DeviceUnavailable: 사용할 수 있는 캡처 장치 없음
            RelayUnreachable: 릴레이 연결 실패
        """
        if self.joined:
            raise MeshCallError(f"already joined room {self.room_id}")

        await self.media.acquire()
        try:
            await self.signaling.connect()
        except RelayUnreachable:
            self.media.release()
            raise

        self.room_id = room_id
        self.display_name = display_name
        self.joined = True
        self.peers.reopen()
        self._receive_task = asyncio.create_task(self._receive_loop())

        await self.signaling.send(schemas.JOIN_ROOM, {"roomId": room_id, "displayName": display_name})
        logger.info(f"[Session] 룸 '{room_id}' 참가 요청 ({display_name})")

    async def leave(self) -> None:
        """룸을 떠나고 모든 리소스를 정리합니다. 여러 번 호출해도 안전합니다."""
        if not self.joined:
            return
        self.joined = False
        room_id = self.room_id

        # close_all 동안 수신 루프가 돌면 안 됨
        await self._stop_receiving()
        await self.peers.close_all()
        try:
            await self.signaling.send(schemas.LEAVE_ROOM, {"roomId": room_id})
        except RelayUnreachable:
            logger.debug("[Session] leave-room 전송 생략 (릴레이 연결 없음)")
        self.media.release()

        await self.signaling.close()
        self.room_id = None
        logger.info(f"[Session] 룸 '{room_id}' 퇴장")

    async def _stop_receiving(self) -> None:
        task = self._receive_task
        self._receive_task = None
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------
    # 시그널링 수신
    # ------------------------------------------------------------

    async def _receive_loop(self) -> None:
        try:
            async for message in self.signaling.messages():
                try:
                    await self.dispatch(message)
                except Exception as e:
                    logger.error(f"[Session] {message.get('type')} 처리 오류: {e}", exc_info=True)
        except RelayUnreachable as e:
            if not self.joined:
                return
            logger.error(f"[Session] 릴레이 연결 끊김: {e}")
            await self._handle_relay_lost(e)

    async def _handle_relay_lost(self, error: RelayUnreachable) -> None:
        self.joined = False
        self._receive_task = None
        await self.peers.close_all()
        self.media.release()
        if self.on_disconnected:
            await self.on_disconnected(error)

    async def dispatch(self, message: Dict[str, Any]) -> None:
        """릴레이 메시지 하나를 처리합니다.

        협상 단계는 링크별 태스크로 넘기므로 한 링크의 협상이 다른 링크의
        메시지 처리를 막지 않습니다.
        """
        message_type = message.get("type")
        if not self.joined:
            logger.debug(f"[Session] 퇴장 후 도착한 {message_type} 무시")
            return
        data = message.get("data") or {}

        if message_type == schemas.WELCOME:
            self.participant_id = data.get("participantId")
            logger.info(f"[Session] 참가자 ID 발급: {self.participant_id}")

        elif message_type == schemas.EXISTING_USERS:
            participants = [p for p in data.get("participants", []) if p != self.participant_id]
            logger.info(f"[Session] 기존 참가자 {len(participants)}명에게 offer")
            for participant_id in participants:
                link = self.peers.ensure_link(participant_id)
                if link is not None:
                    link.spawn(self.peers.create_offer(participant_id))

        elif message_type == schemas.USER_JOINED:
            participant_id = data.get("participantId")
            if participant_id and participant_id != self.participant_id:
                self.peers.ensure_link(participant_id)
                logger.info(f"[Session] '{data.get('displayName')}' 입장, offer 대기")

        elif message_type == schemas.OFFER:
            sender = data.get("from")
            if sender:
                link = self.peers.ensure_link(sender)
                if link is not None:
                    link.spawn(self.peers.handle_offer(sender, data.get("sdp")))

        elif message_type == schemas.ANSWER:
            sender = data.get("from")
            link = self.peers.get_link(sender) if sender else None
            if link is not None:
                link.spawn(self.peers.handle_answer(sender, data.get("sdp")))

        elif message_type == schemas.ICE_CANDIDATE:
            sender = data.get("from")
            link = self.peers.get_link(sender) if sender else None
            if link is not None:
                link.spawn(self.peers.add_ice_candidate(sender, data.get("candidate")))

        elif message_type == schemas.USER_LEFT:
            participant_id = data.get("participantId")
            if participant_id:
                await self.peers.close_link(participant_id)

        elif message_type == schemas.CHAT_MESSAGE:
            if self.on_chat_message:
                await self.on_chat_message(
                    data.get("displayName", "Anonymous"), data.get("message", ""), data.get("timestamp")
                )

        elif message_type == schemas.ERROR:
            logger.warning(f"[Session] 릴레이 오류: {data.get('message')}")

        else:
            logger.debug(f"[Session] 처리하지 않는 메시지 타입: {message_type}")

    async def _send_signal(self, message_type: str, data: dict) -> None:
        try:
            await self.signaling.send(message_type, data)
        except RelayUnreachable as e:
            # 수신 루프가 세션 종료를 처리함
            logger.warning(f"[Session] {message_type} 전송 실패: {e}")

    # ------------------------------------------------------------
    # 피어 링크 콜백
    # ------------------------------------------------------------

    async def _on_remote_track(self, participant_id: str, track: MediaStreamTrack) -> None:
        if self.on_remote_track:
            await self.on_remote_track(participant_id, track)

    async def _on_link_closed(self, participant_id: str) -> None:
        if self.on_remote_left:
            await self.on_remote_left(participant_id)

    async def _on_link_failed(self, participant_id: str, failure: PeerLinkFailure) -> None:
        if self.on_link_failed:
            await self.on_link_failed(participant_id, failure)

    # ------------------------------------------------------------
    # 채팅 / 미디어 제어
    # ------------------------------------------------------------

    async def send_chat(self, message: str) -> None:
        """룸 채팅 메시지를 보냅니다. 타임스탬프는 릴레이가 붙입니다."""
        if not self.joined:
            raise MeshCallError("not in a room")
        await self.signaling.send(schemas.CHAT_MESSAGE, {
            "roomId": self.room_id,
            "displayName": self.display_name,
            "message": message,
        })

    def set_audio_enabled(self, enabled: bool) -> None:
        self.media.set_audio_enabled(enabled)

    def set_video_enabled(self, enabled: bool) -> None:
        self.media.set_video_enabled(enabled)

    async def start_screen_share(self) -> bool:
        return await self.media.start_screen_share()

    def stop_screen_share(self) -> None:
        self.media.stop_screen_share()
