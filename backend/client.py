"""메시 통화 명령줄 클라이언트.

로컬 장치(또는 미디어 파일)로 룸에 참가하고, 표준 입력 줄을 채팅으로
보냅니다. Ctrl-C로 룸을 떠납니다.

Usage:
    uv run python client.py --room room-1 --name alice
    uv run python client.py --room room-1 --name bob --media demo.mp4
    uv run python client.py --relay ws://192.168.0.10:8000/ws --room room-1

채팅 입력 중 명령:
    /mute, /unmute      오디오 송출 끄기/켜기
    /video-off, /video-on  카메라 송출 끄기/켜기
    /share, /unshare    화면 공유 시작/중지
    /quit               룸 떠나기
"""

import asyncio
import argparse
import logging
import sys
from datetime import datetime

from aiortc.contrib.media import MediaBlackhole

from meshcall import MeshSession, MeshCallError, PermissionDenied, RelayUnreachable

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def read_lines(queue: asyncio.Queue) -> None:
    """표준 입력을 한 줄씩 큐에 넣습니다."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            await queue.put(None)
            return
        await queue.put(line.rstrip("\n"))


async def run(args: argparse.Namespace) -> int:
    session = MeshSession.create(args.relay, media_file=args.media, screen_file=args.screen)
    sinks = {}
    disconnected = asyncio.Event()

    async def on_remote_track(participant_id: str, track):
        logger.info(f"원격 {track.kind} 트랙 수신: {participant_id[:8]}")
        # 원격 미디어는 소비만 함 (렌더링 없음)
        sink = sinks.setdefault(participant_id, MediaBlackhole())
        sink.addTrack(track)
        await sink.start()

    async def on_remote_left(participant_id: str):
        logger.info(f"참가자 퇴장: {participant_id[:8]}")
        sink = sinks.pop(participant_id, None)
        if sink is not None:
            await sink.stop()

    async def on_chat_message(display_name: str, message: str, timestamp: int):
        sent_at = datetime.fromtimestamp(timestamp / 1000).strftime("%H:%M:%S") if timestamp else "--:--:--"
        print(f"[{sent_at}] {display_name}: {message}")

    async def on_link_failed(participant_id: str, failure):
        logger.warning(f"피어 연결 실패: {failure}")

    async def on_disconnected(error):
        logger.error(f"릴레이 연결 끊김: {error}")
        disconnected.set()

    session.on_remote_track = on_remote_track
    session.on_remote_left = on_remote_left
    session.on_chat_message = on_chat_message
    session.on_link_failed = on_link_failed
    session.on_disconnected = on_disconnected

    try:
        await session.join(args.room, args.name)
    except PermissionDenied as e:
        logger.error(f"로컬 미디어 접근 거부: {e}")
        return 1
    except RelayUnreachable as e:
        logger.error(f"릴레이 연결 실패: {e}")
        return 1
    except MeshCallError as e:
        logger.error(f"룸 참가 실패: {e}")
        return 1

    lines: asyncio.Queue = asyncio.Queue()
    reader = asyncio.create_task(read_lines(lines))
    try:
        while not disconnected.is_set():
            getter = asyncio.create_task(lines.get())
            waiter = asyncio.create_task(disconnected.wait())
            done, pending = await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            if getter not in done:
                break

            line = getter.result()
            if line is None or line == "/quit":
                break
            if await handle_command(session, line):
                continue
            if line.strip():
                await session.send_chat(line)
    finally:
        reader.cancel()
        await session.leave()
        for sink in sinks.values():
            await sink.stop()

    return 0


async def handle_command(session: MeshSession, line: str) -> bool:
    """채팅 입력 중 미디어 제어 명령을 처리합니다. 명령이면 True."""
    command = line.strip()
    if command == "/mute":
        session.set_audio_enabled(False)
    elif command == "/unmute":
        session.set_audio_enabled(True)
    elif command == "/video-off":
        session.set_video_enabled(False)
    elif command == "/video-on":
        session.set_video_enabled(True)
    elif command == "/share":
        if not await session.start_screen_share():
            logger.info("화면 공유를 시작하지 못함")
    elif command == "/unshare":
        session.stop_screen_share()
    else:
        return False
    return True


def main():
    parser = argparse.ArgumentParser(description="Join a mesh call room")
    parser.add_argument("--relay", default="ws://localhost:8000/ws", help="relay WebSocket URL")
    parser.add_argument("--room", required=True, help="room id")
    parser.add_argument("--name", default="Anonymous", help="display name")
    parser.add_argument("--media", default=None, help="media file instead of camera/microphone")
    parser.add_argument("--screen", default=None, help="media file used as the screen capture")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        logger.info("종료")


if __name__ == "__main__":
    main()
