"""
호출자 세션 컨텍스트

현재 사용자 ID와 클럽 역할 - 출석 기록자(marked_by), 원장 작성자(created_by),
쓰기 권한 확인에 사용한다.
"""

from typing import Optional
from enum import Enum

from .errors import PermissionDenied


class ClubRole(str, Enum):
    """클럽 내 역할"""
    owner = "owner"           # 클럽 소유자/대표
    head_coach = "head_coach" # 수석 코치
    coach = "coach"           # 코치
    staff = "staff"           # 행정 스태프
    student = "student"       # 수강생
    parent = "parent"         # 학부모
    system = "system"         # 예약 작업/CLI


class SessionContext:
    """현재 사용자 컨텍스트"""

    def __init__(
        self,
        user_id: Optional[str],
        role: ClubRole,
        player_id: Optional[str] = None,
        full_name: str = "",
    ):
        self.user_id = user_id
        self.role = role
        self.player_id = player_id
        self.full_name = full_name

    @classmethod
    def system(cls) -> "SessionContext":
        return cls(user_id=None, role=ClubRole.system, full_name="system")

    def current_user_id(self) -> Optional[str]:
        return self.user_id

    def has_role(self, *roles: ClubRole) -> bool:
        return self.role in roles

    def is_admin(self) -> bool:
        """관리자 권한인지 (owner/head_coach)"""
        return self.has_role(ClubRole.owner, ClubRole.head_coach, ClubRole.system)

    def is_staff(self) -> bool:
        """스태프 이상 권한인지"""
        return self.is_admin() or self.has_role(ClubRole.coach, ClubRole.staff)

    def can_record_attendance(self) -> bool:
        return self.is_staff()

    def can_adjust_credits(self) -> bool:
        return self.is_admin()

    def can_view_membership(self, player_id: str) -> bool:
        """본인 멤버십 또는 스태프"""
        return self.is_staff() or (self.player_id is not None and str(self.player_id) == str(player_id))

    def require(self, allowed: bool, action: str) -> None:
        if not allowed:
            raise PermissionDenied(f"{self.role.value} 역할은 {action} 권한이 없습니다")
