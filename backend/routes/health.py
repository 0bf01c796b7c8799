"""Health Check API 라우터.

서비스 상태 확인을 위한 엔드포인트들을 제공합니다.
"""

from fastapi import APIRouter

from .signaling import get_relay

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check():
    """릴레이 상태를 확인합니다.

    Returns:
        dict: 릴레이 초기화 여부와 연결/룸 수
    """
    relay = get_relay()
    if relay is None:
        return {"status": "not_initialized"}

    return {
        "status": "ok",
        "connections": len(relay.channels),
        "rooms": len(relay.registry.rooms),
    }
