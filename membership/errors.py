"""
멤버십 동기화 오류 분류

- ValidationError: 입력 형식 오류 (전송 전 클라이언트에서 차단)
- InsufficientCredit: 잔여 수업 부족 (사용자 조치 필요, 재시도 없음)
- Conflict: 동시 쓰기 충돌 (1회 자동 재시도 후 RetryExhausted)
- NotFound: 참조 무결성 오류 (치명적, 로그)
- NetworkError: 전송 실패 (제한된 횟수만 재시도 후 "오프라인")
- PartialBatchFailure: 일괄 저장 중 일부만 성공 (롤백하지 않음)
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .schemas import BatchResult


class MembershipSyncError(Exception):
    """모든 동기화 오류의 기본 클래스"""

    default_user_message = "요청을 처리하지 못했습니다. 다시 시도해주세요."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or self.default_user_message)
        self.message = message or self.default_user_message
        self.user_message = user_message or self.default_user_message

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(MembershipSyncError):
    default_user_message = "입력값이 올바르지 않습니다."


class InsufficientCredit(MembershipSyncError):
    default_user_message = "잔여 수업 횟수가 부족합니다. 멤버십을 갱신해주세요."


class Conflict(MembershipSyncError):
    default_user_message = "다른 사용자가 동시에 수정했습니다. 다시 시도해주세요."


class RetryExhausted(Conflict):
    default_user_message = "저장하지 못했습니다. 잠시 후 다시 시도해주세요."


class NotFound(MembershipSyncError):
    default_user_message = "활성 멤버십을 찾을 수 없습니다."


class NetworkError(MembershipSyncError):
    default_user_message = "오프라인 상태입니다. 연결을 확인한 뒤 다시 시도해주세요."


class LedgerTimeout(NetworkError):
    default_user_message = "저장 응답이 지연되고 있습니다. 결과를 확인한 뒤 다시 시도해주세요."


class PermissionDenied(MembershipSyncError):
    default_user_message = "이 작업을 수행할 권한이 없습니다."


class PartialBatchFailure(MembershipSyncError):
    """일부 기록만 저장됨 - 결과는 선수별로 보고"""

    default_user_message = "일부 선수의 출석만 저장되었습니다."

    def __init__(self, batch: "BatchResult", message: str = ""):
        failed = len(batch.failed)
        total = len(batch.results)
        super().__init__(message or f"{failed}/{total}건 저장 실패")
        self.batch = batch


ERROR_TYPES = {
    cls.__name__: cls
    for cls in (
        ValidationError,
        InsufficientCredit,
        Conflict,
        RetryExhausted,
        NotFound,
        NetworkError,
        LedgerTimeout,
        PermissionDenied,
    )
}


def user_message_for(kind: Optional[str]) -> str:
    """오류 유형명에서 사용자 메시지 조회"""
    cls = ERROR_TYPES.get(kind or "", MembershipSyncError)
    return cls.default_user_message
