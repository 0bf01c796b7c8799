"""meshcall 예외 정의.

Classes:
    MeshCallError: 모든 예외의 기반 클래스
    PermissionDenied: 로컬 미디어 접근 거부 (입장 불가, 재시도 없음)
    DeviceUnavailable: 장치 없음/제약 조건 불충족 (완화된 제약으로 재시도)
    UserCancelled: 화면 공유 선택 취소
    NegotiationError: 잘못된 SDP 또는 거부된 ICE candidate (로컬 복구)
    PeerLinkFailure: CONNECTED 이후 전송 계층 실패
    RelayUnreachable: 릴레이에 연결할 수 없음 (세션 치명적)
"""


class MeshCallError(Exception):
    """meshcall 예외 기반 클래스."""


class PermissionDenied(MeshCallError):
    """로컬 미디어 획득이 거부됨."""


class DeviceUnavailable(MeshCallError):
    """캡처 장치를 열 수 없거나 제약 조건을 만족할 수 없음."""


class UserCancelled(MeshCallError):
    """사용자가 화면 캡처를 취소함."""


class NegotiationError(MeshCallError):
    """SDP 또는 ICE candidate 처리 실패."""


class PeerLinkFailure(MeshCallError):
    """피어 연결의 전송 계층 실패."""

    def __init__(self, participant_id: str, reason: str = ""):
        self.participant_id = participant_id
        self.reason = reason
        super().__init__(f"peer link {participant_id} failed: {reason}" if reason
                         else f"peer link {participant_id} failed")


class RelayUnreachable(MeshCallError):
    """시그널링 릴레이에 연결할 수 없거나 연결이 끊김."""
