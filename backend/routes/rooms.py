"""룸 조회 API 라우터.

활성 룸 목록과 브라우저 클라이언트용 ICE 서버 설정을 제공합니다.
"""

from fastapi import APIRouter, HTTPException

from meshcall.config import ice_config
from .signaling import get_relay

router = APIRouter(prefix="/api", tags=["rooms"])


@router.get("/rooms")
async def list_rooms():
    """활성 룸 목록을 반환합니다.

    Returns:
        dict: 룸별 참가자 수와 참가자 목록
    """
    relay = get_relay()
    if relay is None:
        raise HTTPException(status_code=503, detail="Relay not initialized")

    rooms = relay.registry.room_list()
    return {"rooms": rooms, "count": len(rooms)}


@router.get("/ice-servers")
async def get_ice_servers():
    """브라우저 RTCPeerConnection용 ICE 서버 설정.

    Returns:
        dict: {"iceServers": [{"urls": "stun:..."}]}
    """
    return {"iceServers": ice_config.browser_ice_servers()}
