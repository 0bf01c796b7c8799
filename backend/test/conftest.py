"""테스트 공용 픽스처.

실제 장치/네트워크 없이 동작하는 가짜 협력자를 제공합니다.

    - RecordingChannel: 보낸 메시지를 기록하는 릴레이 측 채널
    - FakePeerConnection: 메모리 상의 RTCPeerConnection 대용
    - FakeMediaSource: aiortc 합성 트랙을 돌려주는 MediaSource
    - LoopbackSignaling: 실제 SignalingRelay에 메모리로 연결된 SignalingClient 대용
"""

import asyncio
import itertools
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack
from pyee.asyncio import AsyncIOEventEmitter

sys.path.insert(0, str(Path(__file__).parent.parent))

from meshcall.errors import RelayUnreachable
from meshcall.signaling import RoomRegistry, SignalingChannel, SignalingRelay
from meshcall.webrtc.media import LocalMediaStream, MediaSource, MediaTrackController


# ============================================================
# 릴레이 측
# ============================================================

class RecordingChannel(SignalingChannel):
    """보낸 메시지를 리스트에 쌓는 채널."""

    def __init__(self, participant_id: str, fail: bool = False):
        super().__init__(participant_id)
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def _send(self, message: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(message)

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m["data"] for m in self.sent if m["type"] == message_type]


class QueueChannel(SignalingChannel):
    """메시지를 asyncio.Queue로 넘기는 채널."""

    def __init__(self, participant_id: str, inbox: asyncio.Queue):
        super().__init__(participant_id)
        self.inbox = inbox

    async def _send(self, message: Dict[str, Any]) -> None:
        self.inbox.put_nowait(message)


@pytest.fixture
def registry() -> RoomRegistry:
    return RoomRegistry()


@pytest.fixture
def relay(registry) -> SignalingRelay:
    return SignalingRelay(registry)


# ============================================================
# 피어 연결
# ============================================================

class FakeSender:
    def __init__(self, track):
        self.track = track

    def replaceTrack(self, track) -> None:
        self.track = track


class FakePeerConnection(AsyncIOEventEmitter):
    """협상 단계만 흉내 내는 RTCPeerConnection 대용."""

    _ids = itertools.count(1)

    def __init__(self, close_delay: float = 0):
        super().__init__()
        self.name = f"pc{next(self._ids)}"
        self.close_delay = close_delay
        self.senders: List[FakeSender] = []
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.added_candidates = []
        self.offers = 0
        self.reject_remote = False
        self.closed = False

    def addTrack(self, track) -> FakeSender:
        for sender in self.senders:
            if sender.track is track:
                raise RuntimeError("Track already has a sender")
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self) -> List[FakeSender]:
        return list(self.senders)

    async def createOffer(self) -> RTCSessionDescription:
        self.offers += 1
        return RTCSessionDescription(sdp=f"v=0 {self.name} offer {self.offers}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=f"v=0 {self.name} answer", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        if self.reject_remote:
            raise ValueError("rejected remote description")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate) -> None:
        self.added_candidates.append(candidate)

    async def close(self) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True
        self.connectionState = "closed"

    def sender_kinds(self) -> List[str]:
        return [s.track.kind for s in self.senders]


class PeerConnectionFactory:
    """생성한 FakePeerConnection을 기억하는 팩토리."""

    def __init__(self, close_delay: float = 0):
        self.close_delay = close_delay
        self.created: List[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection(self.close_delay)
        self.created.append(pc)
        return pc


@pytest.fixture
def pc_factory() -> PeerConnectionFactory:
    return PeerConnectionFactory()


class SignalRecorder:
    """PeerConnectionManager의 send_signal 대용."""

    def __init__(self):
        self.sent: List[tuple] = []

    async def __call__(self, message_type: str, data: dict) -> None:
        self.sent.append((message_type, data))

    def of_type(self, message_type: str) -> List[dict]:
        return [data for t, data in self.sent if t == message_type]


@pytest.fixture
def signals() -> SignalRecorder:
    return SignalRecorder()


# ============================================================
# 미디어
# ============================================================

class FakeMediaSource(MediaSource):
    """aiortc 합성 트랙(무음/초록 화면)을 돌려주는 미디어 소스."""

    def __init__(self, local_errors=None, screen_error: Optional[Exception] = None,
                 with_camera: bool = True, screen_delay: float = 0):
        self.local_errors = list(local_errors or [])
        self.screen_error = screen_error
        self.with_camera = with_camera
        self.screen_delay = screen_delay
        self.constraints_seen: List[dict] = []
        self.screen_tracks: List[VideoStreamTrack] = []

    async def acquire_local_media(self, constraints: dict) -> LocalMediaStream:
        self.constraints_seen.append(constraints)
        if self.local_errors:
            raise self.local_errors.pop(0)
        return LocalMediaStream(
            audio_tracks=[AudioStreamTrack()],
            video_tracks=[VideoStreamTrack()] if self.with_camera else [],
        )

    async def acquire_screen_capture(self) -> LocalMediaStream:
        if self.screen_delay:
            await asyncio.sleep(self.screen_delay)
        if self.screen_error is not None:
            raise self.screen_error
        track = VideoStreamTrack()
        self.screen_tracks.append(track)
        return LocalMediaStream(video_tracks=[track])


@pytest.fixture
def media_source() -> FakeMediaSource:
    return FakeMediaSource()


@pytest.fixture
async def media(media_source) -> MediaTrackController:
    controller = MediaTrackController(media_source)
    await controller.acquire()
    yield controller
    controller.release()


# ============================================================
# 클라이언트 시그널링
# ============================================================

class LoopbackSignaling:
    """실제 SignalingRelay에 메모리 채널로 연결된 SignalingClient 대용."""

    _ids = itertools.count(1)

    def __init__(self, relay: SignalingRelay, participant_id: Optional[str] = None):
        self.relay = relay
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.channel = QueueChannel(participant_id or f"participant-{next(self._ids):04d}", self.inbox)
        self.sent: List[tuple] = []
        self.fail_connect = False
        self._open = False
        self._closing = False

    @property
    def participant_id(self) -> str:
        return self.channel.participant_id

    @property
    def connected(self) -> bool:
        return self._open

    async def connect(self) -> None:
        if self.fail_connect:
            raise RelayUnreachable("relay is down")
        self._open = True
        await self.relay.connect(self.channel)

    async def send(self, message_type: str, data: Optional[dict] = None) -> None:
        if not self._open:
            raise RelayUnreachable("signaling channel is not open")
        self.sent.append((message_type, data))
        await self.relay.handle(self.channel, {"type": message_type, "data": data or {}})

    async def messages(self):
        while True:
            message = await self.inbox.get()
            if message is None:
                if self._closing:
                    return
                raise RelayUnreachable("relay connection lost")
            yield message

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._closing = True
        await self.relay.disconnect(self.channel)
        self.inbox.put_nowait(None)

    async def drop(self) -> None:
        """릴레이 쪽에서 연결이 갑자기 끊긴 상황."""
        self._open = False
        await self.relay.disconnect(self.channel)
        self.inbox.put_nowait(None)


async def eventually(predicate, timeout: float = 2.0) -> None:
    """조건이 참이 될 때까지 이벤트 루프를 돌립니다."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
