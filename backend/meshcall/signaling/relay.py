"""시그널링 릴레이.

수신한 시그널링 메시지로 룸 레지스트리를 갱신하고, 메시지를 올바른
수신자에게 다시 내보내는 라우터입니다. 페이로드 의미는 검사하지 않습니다.

처리하는 메시지 타입:
    - join-room: 룸 입장, existing-users 응답, 기존 참가자에게 user-joined
    - offer / answer / ice-candidate: from을 붙여 to 대상에게 전달
    - chat-message: 서버 타임스탬프를 붙여 룸 전체에 브로드캐스트
    - leave-room: 룸 퇴장, 남은 참가자에게 user-left
    - get-rooms: 활성 룸 목록 응답

Ordering:
    - 한 채널의 수신 메시지는 하나씩 순서대로 처리되고 각 전달을 await 하므로
      발신자→수신자 쌍 단위로 FIFO가 보장됨
"""

import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .channel import SignalingChannel
from .registry import Membership, RoomRegistry
from . import schemas

logger = logging.getLogger(__name__)


def server_timestamp() -> int:
    """릴레이 기준 타임스탬프 (epoch 밀리초)."""
    return int(time.time() * 1000)


class SignalingRelay:
    """메시지 라우터 겸 멤버십 관리자.

    Attributes:
        registry (RoomRegistry): 주입된 룸 레지스트리
        channels (Dict[str, SignalingChannel]): 연결된 모든 채널 (룸 참가 여부 무관)

    Examples:
        >>> relay = SignalingRelay(RoomRegistry())
        >>> await relay.connect(channel)
        >>> await relay.handle(channel, {"type": "join-room", "data": {"roomId": "r1"}})
        >>> await relay.disconnect(channel)
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        self.channels: Dict[str, SignalingChannel] = {}

    async def connect(self, channel: SignalingChannel) -> None:
        """새 채널을 등록하고 참가자 ID를 알려줍니다."""
        self.channels[channel.participant_id] = channel
        await channel.send(schemas.envelope(
            schemas.WELCOME, schemas.Welcome(participant_id=channel.participant_id)
        ))
        logger.info(f"[Relay] 참가자 {channel.participant_id[:8]} 연결됨")

    async def disconnect(self, channel: SignalingChannel) -> None:
        """전송 계층 연결 종료 처리.

        현재 룸의 멤버십을 제거하고 user-left를 브로드캐스트합니다.
        여러 번 호출해도 멤버십 제거와 user-left는 한 번만 일어납니다.
        """
        channel.close()
        if self.channels.get(channel.participant_id) is channel:
            del self.channels[channel.participant_id]
        await self._remove_membership(channel.participant_id)
        logger.info(f"[Relay] 참가자 {channel.participant_id[:8]} 정리 완료")

    async def handle(self, channel: SignalingChannel, message: Any) -> None:
        """수신 메시지 하나를 처리합니다."""
        try:
            env = schemas.Envelope.model_validate(message)
        except ValidationError:
            await self._send_error(channel, "Malformed message envelope")
            return

        try:
            if env.type == schemas.JOIN_ROOM:
                await self._handle_join_room(channel, schemas.JoinRoom.model_validate(env.data))

            elif env.type in schemas.DIRECT_TYPES:
                await self._handle_direct(channel, env.type, schemas.DirectMessage.model_validate(env.data))

            elif env.type == schemas.CHAT_MESSAGE:
                await self._handle_chat(channel, schemas.ChatMessage.model_validate(env.data))

            elif env.type == schemas.LEAVE_ROOM:
                await self._handle_leave_room(channel, schemas.LeaveRoom.model_validate(env.data))

            elif env.type == schemas.GET_ROOMS:
                await channel.send({
                    "type": schemas.ROOMS_LIST,
                    "data": {"rooms": self.registry.room_list()},
                })

            else:
                logger.warning(f"[Relay] 알 수 없는 메시지 타입: {env.type}")
                await self._send_error(channel, f"Unknown message type: {env.type}")

        except ValidationError as e:
            logger.warning(f"[Relay] {env.type} 형식 오류 (참가자 {channel.participant_id[:8]}): "
                           f"{e.error_count()}개 필드")
            await self._send_error(channel, f"Invalid {env.type} payload")

    async def _handle_join_room(self, channel: SignalingChannel, join: schemas.JoinRoom) -> None:
        """방 입장 처리."""
        participant_id = channel.participant_id

        current = self.registry.get_room_of(participant_id)
        if current is not None and current != join.room_id:
            # 한 채널은 한 룸에만 속함
            await self._remove_membership(participant_id)

        membership, prior = self.registry.add_member(
            join.room_id, participant_id, join.display_name, channel
        )

        await channel.send(schemas.envelope(
            schemas.EXISTING_USERS,
            schemas.ExistingUsers(participants=[m.participant_id for m in prior]),
        ))

        joined = schemas.envelope(
            schemas.USER_JOINED,
            schemas.UserJoined(participant_id=participant_id, display_name=membership.display_name),
        )
        await self._deliver(prior, joined)

        logger.info(f"[Relay] '{membership.display_name}' ({participant_id[:8]}) 룸 '{join.room_id}' 입장, "
                    f"기존 참가자 {len(prior)}명")

    async def _handle_direct(self, channel: SignalingChannel, message_type: str,
                             direct: schemas.DirectMessage) -> None:
        """offer / answer / ice-candidate 전달."""
        target = self.channels.get(direct.to)
        if target is None:
            logger.debug(f"[Relay] {message_type} 수신자 {direct.to[:8]} 없음, 전달 생략")
            return

        forwarded = schemas.ForwardedMessage(
            from_=channel.participant_id, sdp=direct.sdp, candidate=direct.candidate
        )
        await target.send(schemas.envelope(message_type, forwarded))
        logger.debug(f"[Relay] {message_type}: {channel.participant_id[:8]} -> {direct.to[:8]}")

    async def _handle_chat(self, channel: SignalingChannel, chat: schemas.ChatMessage) -> None:
        """채팅 메시지 브로드캐스트 (발신자 포함)."""
        membership = self.registry.get_membership(channel.participant_id)
        room_id = chat.room_id or (membership.room_id if membership else None)
        if not room_id:
            await self._send_error(channel, "Not in a room")
            return

        display_name = chat.display_name or (membership.display_name if membership else "Anonymous")
        broadcast = schemas.envelope(
            schemas.CHAT_MESSAGE,
            schemas.ChatBroadcast(
                display_name=display_name,
                message=chat.message,
                timestamp=server_timestamp(),
            ),
        )
        await self._deliver(self.registry.members(room_id), broadcast)

    async def _handle_leave_room(self, channel: SignalingChannel, leave: schemas.LeaveRoom) -> None:
        """방 퇴장 처리."""
        current = self.registry.get_room_of(channel.participant_id)
        if current is None:
            return
        if leave.room_id and leave.room_id != current:
            logger.debug(f"[Relay] leave-room 룸 불일치: 요청={leave.room_id}, 현재={current}")
            return
        await self._remove_membership(channel.participant_id)

    async def _remove_membership(self, participant_id: str) -> Optional[Membership]:
        membership = self.registry.remove_member(participant_id)
        if membership is None:
            return None

        left = schemas.envelope(
            schemas.USER_LEFT,
            schemas.UserLeft(participant_id=participant_id, display_name=membership.display_name),
        )
        await self._deliver(self.registry.members(membership.room_id), left)
        logger.info(f"[Relay] '{membership.display_name}' ({participant_id[:8]}) "
                    f"룸 '{membership.room_id}' 퇴장")
        return membership

    async def _deliver(self, recipients: List[Membership], message: Dict[str, Any]) -> None:
        for member in recipients:
            await member.channel.send(message)

    async def _send_error(self, channel: SignalingChannel, text: str) -> None:
        await channel.send(schemas.envelope(schemas.ERROR, schemas.ErrorMessage(message=text)))
