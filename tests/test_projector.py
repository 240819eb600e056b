"""
멤버십 스냅샷 계산 단위 테스트
- projector.py 잔여/사용 계산
- 비활성화 판정, 출석 순효과
"""
import pytest
from datetime import date, timedelta

from membership.projector import project, used_classes, net_attendance_charge, charge_generation
from membership.schemas import (
    AllocationType,
    LedgerEntry,
    LedgerReason,
    MembershipStatus,
)

from fakes import make_membership


TODAY = date(2026, 3, 10)


def entry(delta, reason=LedgerReason.ATTENDANCE_PRESENT, event="E1", player="p1", membership="m-p1"):
    return LedgerEntry(
        membership_id=membership,
        player_id=player,
        delta=delta,
        reason=reason,
        source_event_id=event if reason.is_attendance else None,
    )


# =============================================================================
# 잔여 수업 계산
# =============================================================================

class TestProjectCounts:
    """사용/잔여 수업 계산"""

    def test_no_entries(self):
        """원장이 비어 있으면 전부 남음"""
        snapshot = project(make_membership("p1", allocated=10), [], now=TODAY)
        assert snapshot.used_classes == 0
        assert snapshot.remaining_classes == 10
        assert snapshot.should_deactivate is False
        assert snapshot.status == MembershipStatus.ACTIVE

    def test_present_and_reversal(self):
        """차감 후 취소하면 순효과 0"""
        entries = [
            entry(-1, event="E1"),
            entry(-1, event="E2"),
            entry(1, LedgerReason.ATTENDANCE_REVERSAL, event="E2"),
        ]
        snapshot = project(make_membership("p1", allocated=10), entries, now=TODAY)
        assert snapshot.used_classes == 1
        assert snapshot.remaining_classes == 9

    def test_manual_grant_increases_remaining(self):
        """수동 추가는 잔여를 늘림"""
        entries = [entry(-3, LedgerReason.MANUAL_ADJUSTMENT), entry(2, LedgerReason.RECURRING_GRANT)]
        snapshot = project(make_membership("p1", allocated=5), entries, now=TODAY)
        assert snapshot.used_classes == 1
        assert snapshot.remaining_classes == 4

    def test_remaining_never_negative(self):
        """잔여는 0 아래로 표시되지 않음"""
        entries = [entry(-7, LedgerReason.MANUAL_ADJUSTMENT)]
        snapshot = project(make_membership("p1", allocated=5), entries, now=TODAY)
        assert snapshot.remaining_classes == 0
        assert snapshot.should_deactivate is True

    def test_other_membership_entries_ignored(self):
        """다른 멤버십 원장은 무시"""
        entries = [entry(-1), entry(-1, membership="m-other")]
        assert used_classes("m-p1", entries) == 1

    def test_deterministic(self):
        """같은 입력이면 같은 결과"""
        membership = make_membership("p1", allocated=8)
        entries = [entry(-1, event="E1"), entry(-1, event="E2")]
        assert project(membership, entries, now=TODAY) == project(membership, entries, now=TODAY)


# =============================================================================
# 비활성화 판정
# =============================================================================

class TestDeactivation:
    """만료/소진 판정"""

    def test_exhausted_class_count(self):
        """횟수제 소진 → 비활성화 대상"""
        entries = [entry(-10, LedgerReason.MANUAL_ADJUSTMENT)]
        snapshot = project(make_membership("p1", allocated=10), entries, now=TODAY)
        assert snapshot.remaining_classes == 0
        assert snapshot.should_deactivate is True
        assert snapshot.status == MembershipStatus.EXPIRED

    def test_date_range_ignores_class_count(self):
        """기간제는 잔여 수업과 무관"""
        membership = make_membership(
            "p1",
            allocated=0,
            allocation_type=AllocationType.DATE_RANGE,
            end=TODAY + timedelta(days=5),
        )
        snapshot = project(membership, [], now=TODAY)
        assert snapshot.should_deactivate is False
        assert snapshot.days_left == 5

    def test_expired_after_end_date(self):
        """종료일 다음날부터 만료"""
        membership = make_membership("p1", allocated=10, end=TODAY - timedelta(days=1))
        snapshot = project(membership, [], now=TODAY)
        assert snapshot.is_expired is True
        assert snapshot.should_deactivate is True
        assert snapshot.days_left == 0

    def test_end_date_today_not_expired(self):
        """종료일 당일은 유효"""
        membership = make_membership("p1", allocated=10, end=TODAY)
        snapshot = project(membership, [], now=TODAY)
        assert snapshot.is_expired is False
        assert snapshot.days_left == 0

    def test_cancelled_status_kept(self):
        """취소된 멤버십은 cancelled 유지"""
        membership = make_membership("p1", allocated=10, status=MembershipStatus.CANCELLED)
        snapshot = project(membership, [], now=TODAY)
        assert snapshot.status == MembershipStatus.CANCELLED


# =============================================================================
# 출석 순효과
# =============================================================================

class TestAttendanceCharge:
    """(일정, 선수) 쌍 순효과와 세대 번호"""

    def test_net_charge_after_toggle(self):
        entries = [
            entry(-1, event="E1"),
            entry(1, LedgerReason.ATTENDANCE_REVERSAL, event="E1"),
            entry(-1, event="E1"),
        ]
        assert net_attendance_charge(entries, "E1", "p1") == -1
        assert net_attendance_charge(entries, "E2", "p1") == 0

    def test_manual_adjustment_not_counted(self):
        entries = [entry(-1, LedgerReason.MANUAL_ADJUSTMENT)]
        assert net_attendance_charge(entries, "E1", "p1") == 0

    def test_charge_generation(self):
        """같은 사유로 기록된 횟수"""
        entries = [
            entry(-1, event="E1"),
            entry(1, LedgerReason.ATTENDANCE_REVERSAL, event="E1"),
        ]
        assert charge_generation(entries, "E1", "p1", LedgerReason.ATTENDANCE_PRESENT) == 1
        assert charge_generation(entries, "E1", "p1", LedgerReason.ATTENDANCE_REVERSAL) == 1
        assert charge_generation(entries, "E1", "p2", LedgerReason.ATTENDANCE_PRESENT) == 0


@pytest.mark.parametrize("value,expected", [
    ("active", MembershipStatus.ACTIVE),
    ("ACTIVE", MembershipStatus.ACTIVE),
    ("inactive", MembershipStatus.EXPIRED),
    ("expired", MembershipStatus.EXPIRED),
    ("canceled", MembershipStatus.CANCELLED),
    (None, MembershipStatus.ACTIVE),
])
def test_membership_status_from_string(value, expected):
    """원격 상태 문자열 정규화"""
    assert MembershipStatus.from_string(value) == expected
