"""meshcall 설정.

STUN 서버, 협상 타임아웃, 로컬 미디어 장치, 릴레이 서버 등
환경변수 기반 설정을 제공합니다.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional, List

from dotenv import load_dotenv
from aiortc import RTCConfiguration, RTCIceServer

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"[Config] {name}={value!r} 숫자 아님, 기본값 {default} 사용")
        return default


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정.

    메시 토폴로지에서는 공개 STUN 서버 하나만 사용합니다 (TURN 미지원).
    빈 문자열을 지정하면 STUN 없이 host 후보만 사용합니다.
    """

    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL", "stun:stun.l.google.com:19302")

    @property
    def has_stun_server(self) -> bool:
        """STUN 서버 설정 여부."""
        return bool(self.STUN_SERVER_URL)

    def ice_servers(self) -> List[RTCIceServer]:
        """aiortc용 ICE 서버 리스트를 반환합니다."""
        if not self.has_stun_server:
            return []
        return [RTCIceServer(urls=[self.STUN_SERVER_URL])]

    def rtc_configuration(self) -> RTCConfiguration:
        """RTCPeerConnection 생성용 설정을 반환합니다.

        Note:
            - aiortc는 iceServers=None이면 자체 기본 STUN을 사용하므로
              항상 명시적인 리스트를 넘깁니다.
        """
        return RTCConfiguration(iceServers=self.ice_servers())

    def browser_ice_servers(self) -> List[dict]:
        """브라우저 클라이언트용 ICE 서버 설정 (JSON 직렬화 가능)."""
        if not self.has_stun_server:
            return []
        return [{"urls": self.STUN_SERVER_URL}]


# ============================================================
# 피어 연결 설정
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """피어 연결 및 시그널링 채널 관련 설정."""

    # offer 전송 후 answer 대기 시간 (초). 0이면 무제한 대기
    NEGOTIATION_TIMEOUT: float = _env_float("NEGOTIATION_TIMEOUT", 30.0)

    # 릴레이 WebSocket 연결 타임아웃 (초)
    RELAY_CONNECT_TIMEOUT: float = _env_float("RELAY_CONNECT_TIMEOUT", 10.0)

    # WebSocket keepalive
    RELAY_PING_INTERVAL: float = _env_float("RELAY_PING_INTERVAL", 20.0)
    RELAY_PING_TIMEOUT: float = _env_float("RELAY_PING_TIMEOUT", 10.0)


# ============================================================
# 로컬 미디어 장치
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """로컬 캡처 장치 설정 (aiortc MediaPlayer 입력).

    기본값은 Linux (v4l2 / pulse / x11grab) 기준입니다.
    """

    CAMERA_DEVICE: str = os.getenv("CAMERA_DEVICE", "/dev/video0")
    CAMERA_FORMAT: Optional[str] = os.getenv("CAMERA_FORMAT", "v4l2") or None

    MICROPHONE_DEVICE: str = os.getenv("MICROPHONE_DEVICE", "default")
    MICROPHONE_FORMAT: Optional[str] = os.getenv("MICROPHONE_FORMAT", "pulse") or None

    SCREEN_DEVICE: str = os.getenv("SCREEN_DEVICE", os.getenv("DISPLAY", ":0.0") or ":0.0")
    SCREEN_FORMAT: Optional[str] = os.getenv("SCREEN_FORMAT", "x11grab") or None
    SCREEN_FRAMERATE: str = os.getenv("SCREEN_FRAMERATE", "15")

    # 카메라 획득 시 순서대로 시도하는 제약 조건 (점점 완화됨)
    CONSTRAINT_LADDER: tuple = (
        {"video_size": "1280x720", "framerate": "30"},
        {"video_size": "640x480"},
        {},
    )


# ============================================================
# 릴레이 서버
# ============================================================

@dataclass(frozen=True)
class RelayConfig:
    """시그널링 릴레이 서버 설정."""

    HOST: str = os.getenv("RELAY_HOST", "0.0.0.0")
    PORT: int = int(os.getenv("RELAY_PORT", "8000"))

    CORS_ORIGIN_REGEX: str = os.getenv(
        "CORS_ORIGIN_REGEX",
        r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}):\d+$",
    )


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
connection_config = ConnectionConfig()
media_config = MediaConfig()
relay_config = RelayConfig()


logger.info(f"[Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
if ice_config.has_stun_server:
    logger.info(f"[Config] STUN URL: {ice_config.STUN_SERVER_URL}")
else:
    logger.info("[Config] STUN 미설정 - host 후보만 사용")
logger.info(f"[Config] 협상 타임아웃: {connection_config.NEGOTIATION_TIMEOUT}s")
