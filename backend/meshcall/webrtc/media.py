"""로컬 미디어 트랙 관리 모듈.

이 모듈은 세션 하나의 로컬 캡처 스트림(카메라+마이크)과 선택적인 화면 공유
스트림을 소유하고, 모든 피어 연결로 나가는 송신 트랙을 결정합니다.

주요 기능:
    - 완화된 제약 조건을 순서대로 시도하는 로컬 미디어 획득
    - 오디오/비디오 송출 on/off (재협상 없음)
    - 화면 공유 시작/중지 (모든 피어 송신자의 비디오 트랙 교체)
    - 피어별 독립 구독 트랙 제공 (MediaRelay)

Architecture:
    - MediaSource: 장치에서 스트림을 여는 외부 협력자 (PlayerMediaSource 기본 구현)
    - MediaTrackController: 활성 비디오 소스 결정 및 트랙 변경 알림
    - 리스너: PeerConnectionManager가 등록하여 변경 시 모든 링크의 송신자 교체

Invariants:
    - 모든 피어 연결은 같은 순간에 같은 비디오 소스(카메라 또는 화면)를 송출
    - 활성 소스는 트랙을 붙이는 시점에 읽으므로 교체 중 생성된 링크도 새 소스를 받음
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av.error import FFmpegError

from ..config import media_config, MediaConfig
from ..errors import DeviceUnavailable, PermissionDenied, UserCancelled
from .tracks import ToggleableTrack

logger = logging.getLogger(__name__)


class VideoSource(str, Enum):
    """현재 송출 중인 비디오 소스."""
    CAMERA = "camera"
    SCREEN = "screen"
    NONE = "none"


@dataclass
class LocalMediaStream:
    """로컬에서 획득한 미디어 스트림.

    Attributes:
        audio_tracks (List[MediaStreamTrack]): 오디오 트랙
        video_tracks (List[MediaStreamTrack]): 비디오 트랙
    """
    audio_tracks: List[MediaStreamTrack] = field(default_factory=list)
    video_tracks: List[MediaStreamTrack] = field(default_factory=list)

    def get_tracks(self) -> List[MediaStreamTrack]:
        return self.audio_tracks + self.video_tracks

    def stop(self) -> None:
        """모든 트랙을 중지하고 장치를 해제합니다."""
        for track in self.get_tracks():
            track.stop()


class MediaSource:
    """로컬 미디어 획득 인터페이스.

    구현체는 다음 예외로 실패를 알립니다:
        - PermissionDenied: 접근 거부 (재시도 없음)
        - DeviceUnavailable: 장치 없음 또는 제약 조건 불충족
        - UserCancelled: 화면 캡처 취소
    """

    async def acquire_local_media(self, constraints: dict) -> LocalMediaStream:
        raise NotImplementedError

    async def acquire_screen_capture(self) -> LocalMediaStream:
        raise NotImplementedError


class PlayerMediaSource(MediaSource):
    """aiortc MediaPlayer로 장치나 파일을 여는 기본 구현.

    Examples:
        >>> source = PlayerMediaSource()  # v4l2 카메라 + pulse 마이크
        >>> source = PlayerMediaSource.from_file("demo.mp4")
    """

    def __init__(self, config: MediaConfig = media_config, media_file: Optional[str] = None,
                 screen_file: Optional[str] = None):
        self.config = config
        self.media_file = media_file
        self.screen_file = screen_file

    @classmethod
    def from_file(cls, path: str, screen_path: Optional[str] = None) -> "PlayerMediaSource":
        return cls(media_file=path, screen_file=screen_path)

    async def _open(self, file: str, format: Optional[str], options: dict, **kwargs) -> MediaPlayer:
        # 장치 열기는 블로킹 호출
        return await asyncio.to_thread(MediaPlayer, file, format=format, options=options or None, **kwargs)

    async def acquire_local_media(self, constraints: dict) -> LocalMediaStream:
        try:
            if self.media_file:
                player = await self._open(self.media_file, None, {}, loop=True)
                return LocalMediaStream(
                    audio_tracks=[player.audio] if player.audio else [],
                    video_tracks=[player.video] if player.video else [],
                )

            camera = await self._open(self.config.CAMERA_DEVICE, self.config.CAMERA_FORMAT, constraints)
            try:
                microphone = await self._open(self.config.MICROPHONE_DEVICE, self.config.MICROPHONE_FORMAT, {})
            except BaseException:
                if camera.video:
                    camera.video.stop()
                raise
        except PermissionError as e:
            raise PermissionDenied(str(e)) from e
        except (FFmpegError, OSError) as e:
            raise DeviceUnavailable(str(e)) from e

        return LocalMediaStream(
            audio_tracks=[microphone.audio] if microphone.audio else [],
            video_tracks=[camera.video] if camera.video else [],
        )

    async def acquire_screen_capture(self) -> LocalMediaStream:
        try:
            if self.screen_file:
                player = await self._open(self.screen_file, None, {}, loop=True)
            else:
                player = await self._open(
                    self.config.SCREEN_DEVICE,
                    self.config.SCREEN_FORMAT,
                    {"framerate": self.config.SCREEN_FRAMERATE},
                )
        except PermissionError as e:
            raise UserCancelled(str(e)) from e
        except (FFmpegError, OSError) as e:
            raise DeviceUnavailable(str(e)) from e

        if player.video is None:
            raise DeviceUnavailable("screen source has no video")
        return LocalMediaStream(video_tracks=[player.video])


TrackListener = Callable[[str, MediaStreamTrack], None]


class MediaTrackController:
    """세션의 LocalMediaState를 소유하는 클래스.

    Attributes:
        source (MediaSource): 로컬 미디어 획득 협력자
        local_stream (Optional[LocalMediaStream]): 카메라+마이크 스트림
        screen_stream (Optional[LocalMediaStream]): 화면 공유 스트림
        audio_track (Optional[ToggleableTrack]): 송출 오디오 트랙
        camera_track (Optional[ToggleableTrack]): 카메라 비디오 트랙
        screen_track (Optional[MediaStreamTrack]): 화면 비디오 트랙
        audio_enabled (bool): 오디오 송출 여부
        video_enabled (bool): 카메라 송출 여부
        active_video_source (VideoSource): 현재 비디오 소스

    Examples:
        >>> controller = MediaTrackController(PlayerMediaSource())
        >>> await controller.acquire()
        >>> await controller.start_screen_share()
        True
        >>> controller.stop_screen_share()
    """

    def __init__(self, source: MediaSource, constraint_ladder: tuple = media_config.CONSTRAINT_LADDER):
        self.source = source
        self.constraint_ladder = constraint_ladder
        self.relay = MediaRelay()

        self.local_stream: Optional[LocalMediaStream] = None
        self.screen_stream: Optional[LocalMediaStream] = None

        self.audio_track: Optional[ToggleableTrack] = None
        self.camera_track: Optional[ToggleableTrack] = None
        self.screen_track: Optional[MediaStreamTrack] = None

        self.audio_enabled = True
        self.video_enabled = True
        self.active_video_source = VideoSource.NONE

        self._listeners: List[TrackListener] = []

        # 화면 획득은 한 번에 하나. stop 호출마다 세대가 올라감
        self._screen_lock = asyncio.Lock()
        self._screen_generation = 0

    async def acquire(self) -> LocalMediaStream:
        """로컬 캡처 스트림을 획득합니다.

        제약 조건 목록을 순서대로 시도합니다. 접근 거부는 즉시 실패하고,
        장치 문제는 다음(더 완화된) 제약 조건으로 재시도합니다.

        Returns:
            LocalMediaStream: 획득한 스트림

        Raises:
            PermissionDenied: 접근 거부
            DeviceUnavailable: 모든 제약 조건에서 실패
        """
        if self.local_stream is not None:
            return self.local_stream

        last_error: Optional[DeviceUnavailable] = None
        for attempt, constraints in enumerate(self.constraint_ladder, start=1):
            try:
                stream = await self.source.acquire_local_media(dict(constraints))
            except PermissionDenied:
                logger.error("[Media] 로컬 미디어 접근 거부")
                raise
            except DeviceUnavailable as e:
                logger.warning(f"[Media] 획득 실패 (시도 {attempt}/{len(self.constraint_ladder)}, "
                               f"제약={constraints}): {e}")
                last_error = e
                continue

            self._set_local_stream(stream)
            logger.info(f"[Media] 로컬 미디어 획득: 오디오={len(stream.audio_tracks)}, "
                        f"비디오={len(stream.video_tracks)} (제약={constraints})")
            return stream

        raise last_error or DeviceUnavailable("no constraints to try")

    def _set_local_stream(self, stream: LocalMediaStream) -> None:
        self.local_stream = stream
        if stream.audio_tracks:
            self.audio_track = ToggleableTrack(stream.audio_tracks[0])
            self.audio_track.enabled = self.audio_enabled
        if stream.video_tracks:
            self.camera_track = ToggleableTrack(stream.video_tracks[0])
            self.camera_track.enabled = self.video_enabled
            self.active_video_source = VideoSource.CAMERA

    def add_listener(self, listener: TrackListener) -> None:
        """송신 트랙 변경 리스너를 등록합니다. listener(kind, track)"""
        self._listeners.append(listener)

    def remove_listener(self, listener: TrackListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, kind: str, track: MediaStreamTrack) -> None:
        for listener in list(self._listeners):
            listener(kind, track)

    def current_video_track(self) -> Optional[MediaStreamTrack]:
        """활성 비디오 소스의 트랙."""
        if self.active_video_source == VideoSource.SCREEN and self.screen_track is not None:
            return self.screen_track
        if self.active_video_source == VideoSource.CAMERA:
            return self.camera_track
        return None

    def outbound_tracks(self) -> Dict[str, Optional[MediaStreamTrack]]:
        """지금 송출해야 하는 종류별 소스 트랙 (종류당 최대 1개)."""
        return {"audio": self.audio_track, "video": self.current_video_track()}

    def subscribe(self, track: MediaStreamTrack) -> MediaStreamTrack:
        """피어 연결 하나가 사용할 독립 구독 트랙을 반환합니다.

        aiortc 트랙 하나를 여러 송신자가 직접 recv() 하면 프레임이 나뉘므로
        MediaRelay로 소비자마다 별도 프록시를 만듭니다.
        """
        return self.relay.subscribe(track)

    def set_audio_enabled(self, enabled: bool) -> None:
        """오디오 송출을 켜거나 끕니다. 캡처와 송신 트랙은 그대로 유지됩니다."""
        self.audio_enabled = enabled
        if self.audio_track is not None:
            self.audio_track.enabled = enabled
        logger.info(f"[Media] 오디오 {'켜짐' if enabled else '꺼짐'}")

    def set_video_enabled(self, enabled: bool) -> None:
        """카메라 송출을 켜거나 끕니다. 화면 공유 상태와 무관합니다."""
        self.video_enabled = enabled
        if self.camera_track is not None:
            self.camera_track.enabled = enabled
        logger.info(f"[Media] 카메라 {'켜짐' if enabled else '꺼짐'}")

    async def start_screen_share(self) -> bool:
        """화면 공유를 시작합니다.

        화면 스트림을 획득한 뒤 모든 피어 송신자의 비디오 트랙을 화면 트랙으로
        교체합니다. 획득이 거부되거나 불가능하면 상태 변경 없이 False를 반환합니다.

        Returns:
            bool: 화면 공유 중이면 True
        """
        async with self._screen_lock:
            if self.active_video_source == VideoSource.SCREEN:
                return True

            generation = self._screen_generation
            try:
                stream = await self.source.acquire_screen_capture()
            except (UserCancelled, DeviceUnavailable, PermissionDenied) as e:
                logger.info(f"[Media] 화면 공유 시작 안 됨: {type(e).__name__}: {e}")
                return False

            if generation != self._screen_generation:
                stream.stop()
                logger.info("[Media] 획득 중 화면 공유가 중지되어 새 스트림 폐기")
                return False
            if not stream.video_tracks:
                stream.stop()
                logger.info("[Media] 화면 스트림에 비디오 트랙 없음")
                return False

            self._activate_screen(stream)
            return True

    def _activate_screen(self, stream: LocalMediaStream) -> None:
        screen_track = stream.video_tracks[0]
        self.screen_stream = stream
        self.screen_track = screen_track
        self.active_video_source = VideoSource.SCREEN

        @screen_track.on("ended")
        def on_ended():
            # 사용자가 OS 쪽에서 공유를 끝낸 경우
            if self.screen_track is screen_track:
                logger.info("[Media] 화면 트랙 종료됨, 카메라로 복귀")
                self.stop_screen_share()

        self._notify("video", screen_track)
        logger.info("[Media] 화면 공유 시작")

    def stop_screen_share(self) -> None:
        """화면 공유를 중지하고 카메라 트랙으로 되돌립니다.

        진행 중인 start_screen_share의 획득 결과도 폐기됩니다.
        """
        self._screen_generation += 1
        if self.screen_stream is None:
            return

        stream = self.screen_stream
        self.screen_stream = None
        self.screen_track = None

        if self.camera_track is not None:
            self.active_video_source = VideoSource.CAMERA
            self._notify("video", self.camera_track)
        else:
            self.active_video_source = VideoSource.NONE

        stream.stop()
        logger.info(f"[Media] 화면 공유 중지 (비디오 소스: {self.active_video_source.value})")

    def release(self) -> None:
        """모든 로컬 스트림을 중지합니다. 세션 종료 시 호출됩니다."""
        self.stop_screen_share()
        if self.local_stream is not None:
            self.local_stream.stop()
        for track in (self.audio_track, self.camera_track):
            if track is not None:
                track.stop()
        self.local_stream = None
        self.audio_track = None
        self.camera_track = None
        self.active_video_source = VideoSource.NONE
