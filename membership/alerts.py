"""
멤버십 잔여량/만료 알림

스냅샷을 임계치 표와 비교해 회원에게 보낼 알림을 결정한다.
발송 자체는 notify 협력자가 담당.
"""

from typing import Callable, List, Optional
from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field

from .schemas import AllocationType, MembershipSnapshot


class AlertSeverity(str, Enum):
    """알림 우선순위"""
    NORMAL = "normal"
    HIGH = "high"


@dataclass(frozen=True)
class AlertThreshold:
    """알림 임계치"""
    code: str
    title: str
    message: str
    condition: Callable[[MembershipSnapshot], bool]

    @property
    def severity(self) -> AlertSeverity:
        return AlertSeverity.HIGH if self.code.endswith(("_0", "_0D")) else AlertSeverity.NORMAL


def _classes_left(n: int) -> Callable[[MembershipSnapshot], bool]:
    return lambda s: (
        s.allocation_type == AllocationType.CLASS_COUNT and s.remaining_classes == n
    )


def _days_left(n: int) -> Callable[[MembershipSnapshot], bool]:
    return lambda s: (
        s.allocation_type == AllocationType.DATE_RANGE and s.days_left == n
    )


ALERT_THRESHOLDS: List[AlertThreshold] = [
    AlertThreshold("REMAINING_3", "잔여 수업 3회",
                   "멤버십 잔여 수업이 3회 남았습니다. 갱신을 준비해주세요.", _classes_left(3)),
    AlertThreshold("REMAINING_1", "잔여 수업 1회",
                   "멤버십 잔여 수업이 1회 남았습니다. 계속 참여하려면 갱신해주세요.", _classes_left(1)),
    AlertThreshold("REMAINING_0", "멤버십 소진",
                   "멤버십 수업을 모두 사용했습니다. 갱신 후 다시 참여할 수 있습니다.", _classes_left(0)),
    AlertThreshold("DATE_7D", "멤버십 만료 7일 전",
                   "멤버십이 7일 후 만료됩니다.", _days_left(7)),
    AlertThreshold("DATE_3D", "멤버십 만료 3일 전",
                   "멤버십이 3일 후 만료됩니다. 바로 갱신해주세요.", _days_left(3)),
    AlertThreshold("DATE_1D", "멤버십 내일 만료",
                   "멤버십이 내일 만료됩니다.", _days_left(1)),
    AlertThreshold("DATE_0D", "멤버십 만료",
                   "멤버십이 만료되었습니다. 갱신 후 다시 참여할 수 있습니다.", _days_left(0)),
]


@dataclass
class MembershipAlert:
    """발송 대상 알림"""
    membership_id: str
    player_id: str
    code: str
    title: str
    message: str
    severity: AlertSeverity
    membership_type_name: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "membership_id": self.membership_id,
            "player_id": self.player_id,
            "alert_code": self.code,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "membership_type": self.membership_type_name,
            "timestamp": self.timestamp.isoformat(),
        }


def evaluate_alerts(
    snapshot: MembershipSnapshot,
    thresholds: Optional[List[AlertThreshold]] = None,
) -> List[MembershipAlert]:
    """스냅샷에 해당하는 알림 목록"""
    alerts = []
    for threshold in thresholds or ALERT_THRESHOLDS:
        if threshold.condition(snapshot):
            alerts.append(MembershipAlert(
                membership_id=snapshot.membership_id,
                player_id=snapshot.player_id,
                code=threshold.code,
                title=threshold.title,
                message=threshold.message,
                severity=threshold.severity,
                membership_type_name=snapshot.membership_type_name,
            ))
    return alerts
