"""시그널링 WebSocket 라우터.

메시 통화용 시그널링 WebSocket 엔드포인트를 제공합니다.
연결마다 참가자 ID를 발급하고, 수신한 메시지를 SignalingRelay로 넘깁니다.
미디어는 이 서버를 거치지 않습니다.
"""

import json
import logging
import uuid
from typing import Optional, TYPE_CHECKING

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from meshcall.signaling import WebSocketChannel

if TYPE_CHECKING:
    from meshcall.signaling import SignalingRelay

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 릴레이 참조 (app.py에서 설정됨)
_relay: Optional["SignalingRelay"] = None


def init_relay(relay: "SignalingRelay"):
    """릴레이 인스턴스를 초기화합니다.

    app.py에서 호출하여 글로벌 릴레이 참조를 설정합니다.

    Args:
        relay: SignalingRelay 인스턴스
    """
    global _relay
    _relay = relay
    logger.info("시그널링 라우터 릴레이 초기화 완료")


def get_relay() -> Optional["SignalingRelay"]:
    return _relay


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """메시 통화 시그널링을 위한 WebSocket 엔드포인트.

    처리하는 메시지 타입:
        - join-room: 룸 참가 (roomId, displayName)
        - offer / answer / ice-candidate: 다른 참가자에게 전달 (to 필요)
        - chat-message: 룸 전체 채팅
        - leave-room: 현재 룸에서 퇴장
        - get-rooms: 활성 룸 목록 요청

    Args:
        websocket: FastAPI WebSocket 연결 객체
    """
    if _relay is None:
        logger.error("릴레이가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await websocket.accept()

    participant_id = str(uuid.uuid4())
    channel = WebSocketChannel(participant_id, websocket)

    try:
        await _relay.connect(channel)

        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"참가자 {participant_id[:8]}로부터 잘못된 JSON 수신")
                message = None
            await _relay.handle(channel, message)

    except WebSocketDisconnect:
        logger.info(f"참가자 {participant_id[:8]} 연결 끊김")
    except Exception as e:
        logger.error(f"참가자 {participant_id[:8]}의 WebSocket 연결 중 오류: {e}")
    finally:
        await _relay.disconnect(channel)
