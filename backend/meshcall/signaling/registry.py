"""룸 레지스트리 모듈.

이 모듈은 릴레이 측에서 룸(방)과 멤버십(참가자)을 관리합니다.
룸 식별자 → 현재 연결된 참가자 목록(입장 순서 유지)의 권위 있는 매핑입니다.

주요 기능:
    - 첫 입장 시 룸 자동 생성, 마지막 퇴장 시 자동 삭제 (참조 카운트)
    - 입장 시 기존 참가자 스냅샷을 원자적으로 반환
    - 참가자 ID로 O(1) 조회

Architecture:
    - rooms: Dict[str, Room] - 룸 ID → Room (Room.members는 입장 순서 유지)
    - participant_rooms: Dict[str, str] - 참가자 ID → 룸 ID (빠른 조회용)

Thread Safety:
    - 룸별 락으로 같은 룸의 입장/퇴장을 직렬화
    - 서로 다른 룸은 독립적으로 진행
    - 레지스트리 락은 룸 맵 자체만 보호

Examples:
    >>> registry = RoomRegistry()
    >>> membership, prior = registry.add_member("r1", "peer-a", "A", channel_a)
    >>> prior
    []
    >>> membership, prior = registry.add_member("r1", "peer-b", "B", channel_b)
    >>> [m.participant_id for m in prior]
    ['peer-a']
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .channel import SignalingChannel

logger = logging.getLogger(__name__)


@dataclass
class Membership:
    """룸에 참가한 참가자 한 명.

    Attributes:
        participant_id (str): 참가자 고유 ID (채널당 하나)
        display_name (str): 표시 이름
        room_id (str): 참가 중인 룸 ID
        channel (SignalingChannel): 참가자의 시그널링 채널
    """
    participant_id: str
    display_name: str
    room_id: str
    channel: SignalingChannel


@dataclass
class Room:
    """참가자 집합과 참조 카운트를 가진 룸."""
    room_id: str
    members: Dict[str, Membership] = field(default_factory=dict)
    ref_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def acquire(self, membership: Membership) -> None:
        self.members[membership.participant_id] = membership
        self.ref_count += 1

    def release(self, participant_id: str) -> Optional[Membership]:
        membership = self.members.pop(participant_id, None)
        if membership is not None:
            self.ref_count -= 1
        return membership


class RoomRegistry:
    """룸과 멤버십을 관리하는 서비스 객체.

    릴레이 핸들러에 명시적으로 주입되어 사용됩니다 (전역 상태 아님).
    상태는 전부 메모리에만 있고 프로세스 수명과 같습니다.
    """

    def __init__(self):
        # room_id -> Room
        self.rooms: Dict[str, Room] = {}

        # participant_id -> room_id
        self.participant_rooms: Dict[str, str] = {}

        self._lock = threading.Lock()

    def _get_or_create_room(self, room_id: str) -> Room:
        with self._lock:
            room = self.rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id)
                self.rooms[room_id] = room
                logger.info(f"[Registry] 룸 '{room_id}' 생성")
            return room

    def add_member(
        self,
        room_id: str,
        participant_id: str,
        display_name: str,
        channel: SignalingChannel,
    ) -> Tuple[Membership, List[Membership]]:
        """참가자를 룸에 추가하고 기존 참가자 스냅샷을 반환합니다.

        스냅샷은 룸 락 안에서 추가와 함께 계산되므로, 동시에 입장하는
        두 참가자 중 한 명은 반드시 상대를 스냅샷에서 보고 다른 한 명은
        보지 못합니다. 이 스냅샷이 existing-users 응답이자 user-joined
        알림 대상입니다.

        Args:
            room_id: 참가할 룸 ID
            participant_id: 참가자 ID
            display_name: 표시 이름
            channel: 참가자의 시그널링 채널

        Returns:
            Tuple[Membership, List[Membership]]: 새 멤버십과 입장 순서대로 정렬된
                기존 참가자 목록

        Raises:
            ValueError: 이미 다른 룸에 참가 중인 경우
        """
        while True:
            room = self._get_or_create_room(room_id)
            with room.lock:
                # 빈 룸이 삭제된 직후라면 새 룸으로 다시 시도
                if self.rooms.get(room_id) is not room:
                    continue

                current = self.participant_rooms.get(participant_id)
                if current is not None and current != room_id:
                    raise ValueError(f"participant {participant_id} already in room {current}")

                prior = [m for pid, m in room.members.items() if pid != participant_id]
                membership = Membership(
                    participant_id=participant_id,
                    display_name=display_name,
                    room_id=room_id,
                    channel=channel,
                )
                if participant_id in room.members:
                    room.members[participant_id] = membership
                else:
                    room.acquire(membership)
                self.participant_rooms[participant_id] = room_id
                count = room.ref_count

            logger.info(f"[Registry] '{display_name}' ({participant_id[:8]}) 룸 '{room_id}' 입장. "
                        f"참가자 {count}명")
            return membership, prior

    def remove_member(self, participant_id: str) -> Optional[Membership]:
        """참가자를 현재 룸에서 제거합니다.

        룸이 비게 되면 룸도 삭제합니다. 두 번 호출해도 안전하며
        두 번째 호출은 None을 반환합니다.

        Returns:
            Optional[Membership]: 제거된 멤버십. 참가 중이 아니었으면 None
        """
        room_id = self.participant_rooms.get(participant_id)
        if room_id is None:
            return None
        room = self.rooms.get(room_id)
        if room is None:
            self.participant_rooms.pop(participant_id, None)
            return None

        with room.lock:
            membership = room.release(participant_id)
            if membership is None:
                return None
            self.participant_rooms.pop(participant_id, None)
            remaining = room.ref_count
            if remaining == 0:
                with self._lock:
                    if self.rooms.get(room_id) is room:
                        del self.rooms[room_id]

        if remaining == 0:
            logger.info(f"[Registry] 룸 '{room_id}' 삭제 (비어 있음)")
        else:
            logger.info(f"[Registry] '{membership.display_name}' ({participant_id[:8]}) 룸 '{room_id}' 퇴장. "
                        f"참가자 {remaining}명")
        return membership

    def list_others(self, room_id: str, exclude_participant_id: str) -> List[str]:
        """특정 참가자를 제외한 룸 참가자 ID를 입장 순서대로 반환합니다."""
        room = self.rooms.get(room_id)
        if room is None:
            return []
        with room.lock:
            return [pid for pid in room.members if pid != exclude_participant_id]

    def members(self, room_id: str) -> List[Membership]:
        """룸의 모든 멤버십 (입장 순서)."""
        room = self.rooms.get(room_id)
        if room is None:
            return []
        with room.lock:
            return list(room.members.values())

    def get_membership(self, participant_id: str) -> Optional[Membership]:
        room_id = self.participant_rooms.get(participant_id)
        if room_id is None:
            return None
        room = self.rooms.get(room_id)
        if room is None:
            return None
        return room.members.get(participant_id)

    def get_room_of(self, participant_id: str) -> Optional[str]:
        return self.participant_rooms.get(participant_id)

    def room_count(self, room_id: str) -> int:
        """룸의 현재 참가자 수. 룸이 없으면 0."""
        room = self.rooms.get(room_id)
        return room.ref_count if room else 0

    def room_list(self) -> List[dict]:
        """모든 룸의 요약 정보를 반환합니다.

        Returns:
            List[dict]: room_id, participant_count, participants(participant_id,
                display_name) 키를 가진 딕셔너리 리스트
        """
        with self._lock:
            rooms = list(self.rooms.values())
        return [
            {
                "room_id": room.room_id,
                "participant_count": room.ref_count,
                "participants": [
                    {"participant_id": m.participant_id, "display_name": m.display_name}
                    for m in list(room.members.values())
                ],
            }
            for room in rooms
        ]
