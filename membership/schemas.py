"""
멤버십/출석 스키마 정의

Pydantic 모델을 사용하여 원격 행(row) 파싱 및 타입 강제
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from enum import Enum


# ==================== Enum ====================

class AttendanceStatus(str, Enum):
    """출석 상태"""
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"

    @property
    def is_charged(self) -> bool:
        """수업 1회 차감 대상인지"""
        return self is AttendanceStatus.PRESENT


class MembershipStatus(str, Enum):
    """멤버십 상태 (soft status, 물리 삭제 없음)"""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "MembershipStatus":
        """원격 값(대문자 포함)에서 상태 추출"""
        if not value:
            return cls.ACTIVE
        normalized = value.strip().lower()
        if normalized in ("inactive", "expired"):
            return cls.EXPIRED
        if normalized in ("cancelled", "canceled"):
            return cls.CANCELLED
        return cls.ACTIVE


class AllocationType(str, Enum):
    """멤버십 할당 방식"""
    CLASS_COUNT = "CLASS_COUNT"   # 수업 횟수제
    DATE_RANGE = "DATE_RANGE"     # 기간제


class LedgerReason(str, Enum):
    """원장 변경 사유"""
    ATTENDANCE_PRESENT = "attendance_present"
    ATTENDANCE_REVERSAL = "attendance_reversal"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    RECURRING_GRANT = "recurring_grant"

    @property
    def is_attendance(self) -> bool:
        return self in (LedgerReason.ATTENDANCE_PRESENT, LedgerReason.ATTENDANCE_REVERSAL)


def _as_str_id(value: Any) -> Any:
    """정수/UUID id를 문자열로 통일"""
    if value is None or isinstance(value, str):
        return value
    return str(value)


# ==================== 원격 행 모델 ====================

class Membership(BaseModel):
    """선수의 수업 크레딧 할당"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="멤버십 ID")
    player_id: str = Field(..., description="선수 ID")
    allocated_classes: int = Field(default=0, ge=0, description="할당된 수업 수")
    start_date: date = Field(..., description="시작일")
    end_date: Optional[date] = Field(None, description="종료일")
    status: MembershipStatus = Field(default=MembershipStatus.ACTIVE)
    allocation_type: AllocationType = Field(default=AllocationType.CLASS_COUNT)
    membership_type_name: Optional[str] = Field(None, description="멤버십 유형명")

    @field_validator("id", "player_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return _as_str_id(v)

    @field_validator("allocated_classes", mode="before")
    @classmethod
    def _coerce_allocated(cls, v):
        return 0 if v is None else v

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, v):
        if isinstance(v, MembershipStatus):
            return v
        return MembershipStatus.from_string(v)


class LedgerEntry(BaseModel):
    """크레딧 변경 기록 (append-only)"""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    membership_id: str
    player_id: str
    delta: int = Field(..., description="부호 있는 변경량 (음수 = 차감)")
    reason: LedgerReason
    source_event_id: Optional[str] = Field(None, description="원인이 된 일정(event) ID")
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @field_validator("id", "membership_id", "player_id", "source_event_id", "created_by", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return _as_str_id(v)


class AttendanceRecord(BaseModel):
    """한 일정에 대한 선수 한 명의 출석 상태"""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    event_id: str
    player_id: str
    team_id: Optional[str] = None
    status: AttendanceStatus
    notes: Optional[str] = None
    recorded_by: Optional[str] = None
    recorded_at: Optional[datetime] = None

    @field_validator("id", "event_id", "player_id", "team_id", "recorded_by", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return _as_str_id(v)


class MembershipSnapshot(BaseModel):
    """표시용 멤버십 요약 (파생 값, 저장하지 않음)"""
    model_config = ConfigDict(frozen=True)

    membership_id: str
    player_id: str
    allocation_type: AllocationType = AllocationType.CLASS_COUNT
    allocated_classes: int = 0
    used_classes: int = 0
    remaining_classes: int = 0
    days_left: Optional[int] = None
    should_deactivate: bool = False
    is_expired: bool = False
    status: MembershipStatus = MembershipStatus.ACTIVE
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    membership_type_name: Optional[str] = None

    @field_validator("membership_id", "player_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return _as_str_id(v)

    @field_validator("allocated_classes", "used_classes", "remaining_classes", mode="before")
    @classmethod
    def _coerce_counts(cls, v):
        return 0 if v is None else v

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, v):
        if isinstance(v, MembershipStatus):
            return v
        return MembershipStatus.from_string(v)


# ==================== 출석 저장 입출력 ====================

class AttendanceMark(BaseModel):
    """출석 저장 요청 한 건"""
    model_config = ConfigDict(frozen=True)

    player_id: str = Field(..., min_length=1)
    status: AttendanceStatus
    notes: str = ""

    @field_validator("player_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return _as_str_id(v)


class AttendanceResult(BaseModel):
    """선수별 저장 결과"""
    model_config = ConfigDict(frozen=True)

    player_id: str
    status: AttendanceStatus
    applied: bool = Field(..., description="출석 상태가 저장되었는지")
    credited: bool = Field(default=False, description="원장이 변경되었는지")
    delta: int = 0
    error: Optional[str] = Field(None, description="오류 유형명 (예: InsufficientCredit)")
    message: Optional[str] = None
    remaining: Optional[int] = None


class BatchResult(BaseModel):
    """일괄 저장 결과"""
    model_config = ConfigDict(frozen=True)

    event_id: str
    results: List[AttendanceResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> List[AttendanceResult]:
        return [r for r in self.results if r.applied]

    @property
    def failed(self) -> List[AttendanceResult]:
        return [r for r in self.results if not r.applied]

    @property
    def credited_count(self) -> int:
        return sum(1 for r in self.results if r.credited)

    @property
    def is_partial(self) -> bool:
        """일부만 성공"""
        return bool(self.succeeded) and bool(self.failed)

    @property
    def all_applied(self) -> bool:
        return not self.failed

    def for_player(self, player_id: str) -> Optional[AttendanceResult]:
        for r in self.results:
            if r.player_id == player_id:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "credited": self.credited_count,
            "results": [r.model_dump(mode="json") for r in self.results],
        }
