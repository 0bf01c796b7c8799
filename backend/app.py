"""FastAPI Mesh Call Signaling Relay.

이 모듈은 풀 메시 WebRTC 그룹 통화를 위한 시그널링 릴레이 서버를 제공합니다.
FastAPI와 WebSocket을 사용하여 룸 멤버십을 관리하고 시그널링 메시지를
참가자 사이에 전달합니다.

주요 기능:
    - 룸 기반 참가자 관리 (다중 룸 지원)
    - WebRTC offer/answer, ICE candidate 전달
    - 실시간 참가자 입/퇴장 알림
    - 룸 채팅 브로드캐스트 (서버 타임스탬프)
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - Mesh: 미디어는 클라이언트끼리 직접 주고받고 서버는 시그널링만 중계
    - RoomRegistry: 룸 및 멤버십 상태 관리
    - SignalingRelay: 메시지 라우팅
    - WebSocket: 실시간 시그널링 메시지 전송
"""
import logging
from contextlib import asynccontextmanager
import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meshcall.config import relay_config
from meshcall.signaling import RoomRegistry, SignalingRelay
from routes import health_router, rooms_router, signaling_router, init_signaling_relay


# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{__import__('datetime').datetime.now().strftime('%Y%m%d')}.log"

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일)
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    import glob
    from datetime import datetime, timedelta

    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file)[len("server_"):-len(".log")]
            if datetime.strptime(date_str, "%Y%m%d") < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


# 글로벌 릴레이 인스턴스
room_registry = RoomRegistry()
signaling_relay = SignalingRelay(room_registry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    Args:
        app (FastAPI): FastAPI 애플리케이션 인스턴스

    Yields:
        None: 앱이 실행되는 동안 제어를 반환

    Note:
        - 시작: 오래된 로그 정리
        - 종료: 남아 있는 시그널링 채널 닫기
    """
    logger.info("메시 통화 시그널링 릴레이 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    yield

    logger.info("서버 종료 중...")
    for channel in list(signaling_relay.channels.values()):
        await signaling_relay.disconnect(channel)
    logger.info("시그널링 채널 정리 완료")


app = FastAPI(title="Mesh Call Signaling Relay", lifespan=lifespan)

# CORS - 개발 환경에서는 로컬 네트워크 허용
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=relay_config.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(rooms_router)
app.include_router(signaling_router)

# WebSocket 시그널링 라우터에 릴레이 인스턴스 전달
init_signaling_relay(signaling_relay)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트 (Health check).

    Returns:
        dict: 서버 상태 정보를 포함하는 딕셔너리
            - status (str): 서버 상태
            - service (str): 서비스 이름

    Examples:
        >>> response = await root()
        >>> print(response)
        {"status": "ok", "service": "Mesh Call Signaling Relay"}
    """
    return {"status": "ok", "service": "Mesh Call Signaling Relay"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=relay_config.HOST, port=relay_config.PORT, log_level="info")
