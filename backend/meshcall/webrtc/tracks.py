"""로컬 미디어 트랙 래퍼 모듈.

캡처 트랙을 감싸서 송출 여부(enabled)를 제어합니다. 비활성 상태에서는
원본 프레임 대신 무음/검은 화면 프레임을 내보내므로, 피어 연결의 송신
트랙은 그대로 두고 재협상 없이 음소거/화면 끄기를 할 수 있습니다.
"""

import logging

from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

logger = logging.getLogger(__name__)


def silence_like(frame: AudioFrame) -> AudioFrame:
    """같은 형식/길이의 무음 오디오 프레임을 만듭니다."""
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


def black_like(frame: VideoFrame) -> VideoFrame:
    """같은 크기의 검은 yuv420p 비디오 프레임을 만듭니다."""
    black = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    luma, *chroma = black.planes
    luma.update(bytes([16]) * luma.buffer_size)
    for plane in chroma:
        plane.update(bytes([128]) * plane.buffer_size)
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class ToggleableTrack(MediaStreamTrack):
    """송출 on/off가 가능한 로컬 트랙.

    Attributes:
        kind (str): 원본 트랙 종류 ("audio" 또는 "video")
        track (MediaStreamTrack): 원본 캡처 트랙
        enabled (bool): False면 무음/검은 프레임 송출

    Note:
        - 캡처는 멈추지 않음 (원본 프레임은 계속 소비됨)
        - 트랙 객체 자체는 바뀌지 않으므로 송신자 재설정이 필요 없음
        - 원본 트랙이 끝나면 이 트랙도 종료되어 "ended" 이벤트 발생

    Examples:
        >>> camera = ToggleableTrack(player.video)
        >>> camera.enabled = False  # 화면 끄기
        >>> frame = await camera.recv()  # 검은 프레임
    """

    def __init__(self, track: MediaStreamTrack):
        super().__init__()
        self.kind = track.kind
        self.track = track
        self.enabled = True

    async def recv(self):
        try:
            frame = await self.track.recv()
        except MediaStreamError:
            self.stop()
            raise

        if self.enabled:
            return frame
        if self.kind == "audio":
            return silence_like(frame)
        return black_like(frame)

    def stop(self) -> None:
        if self.readyState != "ended":
            logger.debug(f"[WebRTC] 로컬 {self.kind} 트랙 종료")
        super().stop()
        self.track.stop()
