"""클라이언트 측 시그널링 채널.

릴레이 WebSocket에 연결하여 봉투(envelope) 형식의 JSON 메시지를 주고받습니다.
송신은 호출 순서대로 직렬화되고, 수신은 messages() 비동기 반복자로 도착
순서대로 전달됩니다.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..config import connection_config
from ..errors import RelayUnreachable

logger = logging.getLogger(__name__)


class SignalingClient:
    """릴레이 WebSocket 클라이언트.

    Attributes:
        url (str): 릴레이 WebSocket URL (예: ws://localhost:8000/ws)
        open_timeout (float): 연결 타임아웃 (초)

    Examples:
        >>> client = SignalingClient("ws://localhost:8000/ws")
        >>> await client.connect()
        >>> await client.send("join-room", {"roomId": "r1", "displayName": "alice"})
        >>> async for message in client.messages():
        ...     print(message["type"])
    """

    def __init__(
        self,
        url: str,
        open_timeout: float = connection_config.RELAY_CONNECT_TIMEOUT,
        ping_interval: Optional[float] = connection_config.RELAY_PING_INTERVAL,
        ping_timeout: Optional[float] = connection_config.RELAY_PING_TIMEOUT,
    ):
        self.url = url
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

        self._ws = None
        self._send_lock = asyncio.Lock()
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closing

    async def connect(self) -> None:
        """릴레이에 연결합니다.

        Raises:
            RelayUnreachable: 연결 실패 또는 타임아웃
        """
        logger.info(f"[Signaling] 릴레이 연결 중: {self.url}")
        try:
            self._ws = await websockets.connect(
                self.url,
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            logger.error(f"[Signaling] 릴레이 연결 실패: {e}")
            raise RelayUnreachable(f"cannot reach relay at {self.url}: {e}") from e

        self._closing = False
        logger.info("[Signaling] 릴레이 연결됨")

    async def send(self, message_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        """메시지 하나를 보냅니다.

        Raises:
            RelayUnreachable: 연결이 없거나 끊어진 경우
        """
        if not self.connected:
            raise RelayUnreachable("signaling channel is not open")

        payload = json.dumps({"type": message_type, "data": data or {}})
        async with self._send_lock:
            try:
                await self._ws.send(payload)
            except ConnectionClosed as e:
                raise RelayUnreachable(f"relay connection closed: {e}") from e

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """수신 메시지를 도착 순서대로 내보냅니다.

        JSON이 아니거나 봉투 형식이 아닌 메시지는 건너뜁니다. close()로
        닫은 경우 정상 종료하고, 그 밖의 연결 종료는 RelayUnreachable로
        알립니다.
        """
        if self._ws is None:
            raise RelayUnreachable("signaling channel is not open")

        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("[Signaling] JSON이 아닌 메시지 무시")
                    continue
                if not isinstance(message, dict) or not isinstance(message.get("type"), str):
                    logger.warning("[Signaling] 봉투 형식이 아닌 메시지 무시")
                    continue
                yield message
        except ConnectionClosed as e:
            if self._closing:
                return
            raise RelayUnreachable(f"relay connection lost: {e}") from e

        if not self._closing:
            raise RelayUnreachable("relay closed the connection")

    async def close(self) -> None:
        """연결을 닫습니다. 여러 번 호출해도 안전합니다."""
        if self._ws is None or self._closing:
            return
        self._closing = True
        await self._ws.close()
        logger.info("[Signaling] 릴레이 연결 종료")
