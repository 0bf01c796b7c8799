"""릴레이 측 시그널링 채널.

클라이언트 하나와 릴레이 사이의 양방향, 순서 보장 메시지 채널입니다.
같은 채널로 나가는 메시지는 송신 락으로 직렬화되어 보낸 순서대로 전달됩니다.
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class SignalingChannel:
    """참가자 한 명의 시그널링 채널.

    Attributes:
        participant_id (str): 채널에 부여된 참가자 ID
        closed (bool): 전송 실패 또는 연결 종료 후 True

    Note:
        - 전송 실패는 호출자에게 전파되지 않음 (fire-and-forget)
        - 한 번 실패한 채널에는 더 이상 전송하지 않음
    """

    def __init__(self, participant_id: str):
        self.participant_id = participant_id
        self.closed = False
        self._send_lock = asyncio.Lock()

    async def send(self, message: Dict[str, Any]) -> bool:
        """메시지를 전송합니다.

        Returns:
            bool: 전송 성공 여부
        """
        if self.closed:
            return False
        async with self._send_lock:
            try:
                await self._send(message)
                return True
            except Exception as e:
                logger.warning(f"[Relay] 참가자 {self.participant_id[:8]}에게 전송 실패: {e}")
                self.closed = True
                return False

    async def _send(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self.closed = True


class WebSocketChannel(SignalingChannel):
    """FastAPI WebSocket 기반 채널."""

    def __init__(self, participant_id: str, websocket: WebSocket):
        super().__init__(participant_id)
        self.websocket = websocket

    async def _send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_json(message)
