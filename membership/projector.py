"""
멤버십 스냅샷 계산

원장(ledger)과 멤버십 행에서 표시용 요약을 계산한다.
I/O 없음 - 같은 입력이면 항상 같은 결과.
"""

from typing import Iterable, Optional, Union
from datetime import date, datetime

from .schemas import (
    AllocationType,
    LedgerEntry,
    LedgerReason,
    Membership,
    MembershipSnapshot,
    MembershipStatus,
)


def _today(now: Optional[Union[date, datetime]]) -> date:
    if now is None:
        return date.today()
    if isinstance(now, datetime):
        return now.date()
    return now


def used_classes(membership_id: str, entries: Iterable[LedgerEntry]) -> int:
    """사용한 수업 수 = -(해당 멤버십 delta 합)"""
    return -sum(e.delta for e in entries if e.membership_id == membership_id)


def project(
    membership: Membership,
    entries: Iterable[LedgerEntry],
    now: Optional[Union[date, datetime]] = None,
) -> MembershipSnapshot:
    """
    멤버십 스냅샷 계산

    remaining = max(0, allocated - used)
    should_deactivate = remaining <= 0 (횟수제) 또는 만료
    """
    today = _today(now)
    used = used_classes(membership.id, entries)
    remaining = max(0, membership.allocated_classes - used)

    days_left = None
    is_expired = membership.status == MembershipStatus.EXPIRED
    if membership.end_date is not None:
        days_left = max(0, (membership.end_date - today).days)
        if today > membership.end_date:
            is_expired = True

    exhausted = (
        membership.allocation_type == AllocationType.CLASS_COUNT
        and remaining <= 0
    )
    should_deactivate = exhausted or is_expired

    if membership.status == MembershipStatus.CANCELLED:
        status = MembershipStatus.CANCELLED
    elif should_deactivate:
        status = MembershipStatus.EXPIRED
    else:
        status = MembershipStatus.ACTIVE

    return MembershipSnapshot(
        membership_id=membership.id,
        player_id=membership.player_id,
        allocation_type=membership.allocation_type,
        allocated_classes=membership.allocated_classes,
        used_classes=used,
        remaining_classes=remaining,
        days_left=days_left,
        should_deactivate=should_deactivate,
        is_expired=is_expired,
        status=status,
        start_date=membership.start_date,
        end_date=membership.end_date,
        membership_type_name=membership.membership_type_name,
    )


def net_attendance_charge(
    entries: Iterable[LedgerEntry],
    event_id: str,
    player_id: str,
) -> int:
    """(일정, 선수) 쌍의 출석 원장 순효과 - 항상 0 또는 -1 이어야 함"""
    return sum(
        e.delta
        for e in entries
        if e.reason.is_attendance
        and e.source_event_id == event_id
        and e.player_id == player_id
    )


def charge_generation(
    entries: Iterable[LedgerEntry],
    event_id: str,
    player_id: str,
    reason: LedgerReason,
) -> int:
    """같은 (일정, 선수, 사유)로 이미 기록된 항목 수 - 멱등 키의 세대 번호"""
    return sum(
        1
        for e in entries
        if e.source_event_id == event_id
        and e.player_id == player_id
        and e.reason == reason
    )
