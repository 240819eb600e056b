"""
출석 저장 조정기 테스트
- 상태 전이 → 원장 변경
- 멱등성, 토글 순효과 0, 크레딧 보존
- 일부 실패, 충돌 재시도, 취소/동시성
"""
import asyncio
import pytest

from membership.cache import ResourceType
from membership.errors import (
    Conflict,
    InsufficientCredit,
    LedgerTimeout,
    NetworkError,
    RetryExhausted,
    ValidationError,
)
from membership.ledger import CreditLedgerClient
from membership.projector import net_attendance_charge
from membership.reconciler import AttendanceReconciler, PairLocks, transition_delta
from membership.schemas import AttendanceMark, AttendanceStatus, LedgerReason

from fakes import FakeRemote, make_membership


P = AttendanceStatus.PRESENT
A = AttendanceStatus.ABSENT
L = AttendanceStatus.LATE
X = AttendanceStatus.EXCUSED


# =============================================================================
# 상태 전이
# =============================================================================

class TestTransitionDelta:
    """상태 전이 표"""

    @pytest.mark.parametrize("previous,requested,expected", [
        (None, P, (-1, LedgerReason.ATTENDANCE_PRESENT)),
        (A, P, (-1, LedgerReason.ATTENDANCE_PRESENT)),
        (L, P, (-1, LedgerReason.ATTENDANCE_PRESENT)),
        (X, P, (-1, LedgerReason.ATTENDANCE_PRESENT)),
        (P, A, (1, LedgerReason.ATTENDANCE_REVERSAL)),
        (P, L, (1, LedgerReason.ATTENDANCE_REVERSAL)),
        (P, X, (1, LedgerReason.ATTENDANCE_REVERSAL)),
        (P, P, None),
        (None, A, None),
        (A, L, None),
        (X, A, None),
    ])
    def test_transition(self, previous, requested, expected):
        assert transition_delta(previous, requested) == expected


# =============================================================================
# 단건 저장
# =============================================================================

@pytest.mark.asyncio
class TestRecord:
    """선수 한 명 저장"""

    async def test_present_charges_once(self, remote, reconciler):
        result = await reconciler.record("E1", "T1", "p1", P, recorded_by="coach-1")
        assert result.applied is True
        assert result.credited is True
        assert result.delta == -1
        assert result.remaining == 9
        assert remote.remaining("p1") == 9
        assert remote.status_of("E1", "p1") == P

    async def test_repeated_present_is_idempotent(self, remote, reconciler):
        """같은 상태 재저장 → 원장 변경 없음"""
        await reconciler.record("E1", "T1", "p1", P)
        second = await reconciler.record("E1", "T1", "p1", P)
        assert second.applied is True
        assert second.credited is False
        assert second.delta == 0
        assert len(remote.entries_for("E1", "p1")) == 1
        assert remote.remaining("p1") == 9

    async def test_toggle_net_zero(self, remote, reconciler):
        """present → absent → present: 원장 3건, 순효과 -1"""
        await reconciler.record("E1", "T1", "p1", P)
        await reconciler.record("E1", "T1", "p1", A)
        await reconciler.record("E1", "T1", "p1", P)

        entries = remote.entries_for("E1", "p1")
        assert [e.delta for e in entries] == [-1, 1, -1]
        assert len({e.idempotency_key for e in entries}) == 3
        assert net_attendance_charge(remote.ledger, "E1", "p1") == -1
        assert remote.remaining("p1") == 9

    async def test_credit_scenario_three_two_three_two(self, stream):
        """잔여 3 → 출석 2 → 결석 3 → 다시 출석 2"""
        fake = FakeRemote(stream=stream)
        fake.add_membership(make_membership("p1", allocated=10), used=7)
        reconciler = AttendanceReconciler(fake, CreditLedgerClient(fake))

        assert fake.remaining("p1") == 3
        await reconciler.record("E1", "T1", "p1", P)
        assert fake.remaining("p1") == 2
        await reconciler.record("E1", "T1", "p1", A)
        assert fake.remaining("p1") == 3
        await reconciler.record("E1", "T1", "p1", P)
        assert fake.remaining("p1") == 2

    async def test_insufficient_credit_raises(self, stream):
        """잔여 0 → InsufficientCredit, 원장/출석 변경 없음"""
        fake = FakeRemote(stream=stream)
        fake.add_membership(make_membership("p1", allocated=10), used=10)
        reconciler = AttendanceReconciler(fake, CreditLedgerClient(fake))

        with pytest.raises(InsufficientCredit):
            await reconciler.record("E123", "T1", "p1", P)

        assert fake.entries_for("E123", "p1") == []
        assert fake.status_of("E123", "p1") is None
        assert fake.remaining("p1") == 0

    async def test_non_charged_status_without_membership(self, stream):
        """차감 없는 상태는 멤버십이 없어도 저장"""
        fake = FakeRemote(stream=stream)
        reconciler = AttendanceReconciler(fake, CreditLedgerClient(fake))
        result = await reconciler.record("E1", "T1", "nobody", A)
        assert result.applied is True
        assert result.credited is False


# =============================================================================
# 일괄 저장
# =============================================================================

@pytest.mark.asyncio
class TestSaveBatch:
    """여러 선수 일괄 저장"""

    async def test_insufficient_credit_result(self, stream):
        """allocated=10, used=10 선수의 present → credited False"""
        fake = FakeRemote(stream=stream)
        fake.add_membership(make_membership("p1", allocated=10), used=10)
        reconciler = AttendanceReconciler(fake, CreditLedgerClient(fake))

        batch = await reconciler.save_batch("E123", "T1", [{"player_id": "p1", "status": "present"}])
        result = batch.for_player("p1")
        assert result.credited is False
        assert result.applied is False
        assert result.error == "InsufficientCredit"
        assert result.message == "Insufficient credit"
        assert len(fake.ledger) == 1

    async def test_partial_failure_five_records(self, stream):
        """5명 중 1명 잔여 0 → 4명 성공, 1명 InsufficientCredit"""
        fake = FakeRemote(stream=stream)
        for pid in ("a", "b", "c", "d"):
            fake.add_membership(make_membership(pid, allocated=5))
        fake.add_membership(make_membership("e", allocated=5), used=5)
        reconciler = AttendanceReconciler(fake, CreditLedgerClient(fake))

        marks = [AttendanceMark(player_id=pid, status=P) for pid in ("a", "b", "c", "d", "e")]
        batch = await reconciler.save_batch("E1", "T1", marks)

        assert len(batch.succeeded) == 4
        assert [r.player_id for r in batch.failed] == ["e"]
        assert batch.failed[0].error == "InsufficientCredit"
        assert batch.is_partial is True
        assert batch.credited_count == 4
        for pid in ("a", "b", "c", "d"):
            assert fake.remaining(pid) == 4
            assert fake.status_of("E1", pid) == P
        assert fake.status_of("E1", "e") is None
        assert fake.calls["save_attendance_batch"] == 1

    async def test_results_keep_input_order(self, remote, reconciler):
        marks = [{"player_id": pid, "status": "absent"} for pid in ("p3", "p1", "p2")]
        batch = await reconciler.save_batch("E1", "T1", marks)
        assert [r.player_id for r in batch.results] == ["p3", "p1", "p2"]

    async def test_empty_batch(self, remote, reconciler):
        batch = await reconciler.save_batch("E1", "T1", [])
        assert batch.results == []
        assert "save_attendance_batch" not in remote.calls

    async def test_duplicate_player_rejected(self, remote, reconciler):
        with pytest.raises(ValidationError):
            await reconciler.save_batch("E1", "T1", [
                {"player_id": "p1", "status": "present"},
                {"player_id": "p1", "status": "absent"},
            ])
        assert "save_attendance_batch" not in remote.calls

    async def test_invalid_status_rejected(self, remote, reconciler):
        with pytest.raises(ValidationError):
            await reconciler.save_batch("E1", "T1", [{"player_id": "p1", "status": "sleeping"}])

    async def test_missing_event_rejected(self, reconciler):
        with pytest.raises(ValidationError):
            await reconciler.save_batch("", "T1", [{"player_id": "p1", "status": "present"}])

    async def test_record_conflict_retried_once(self, remote, reconciler):
        """레코드 충돌 1회 → 재전송 성공"""
        remote.record_conflicts["p2"] = 1
        batch = await reconciler.save_batch("E1", "T1", [
            {"player_id": "p1", "status": "present"},
            {"player_id": "p2", "status": "present"},
        ])
        assert batch.all_applied
        assert remote.remaining("p1") == 9
        assert remote.remaining("p2") == 9
        assert remote.calls["save_attendance_batch"] == 2

    async def test_record_conflict_exhausted(self, remote, reconciler):
        """레코드 충돌 2회 → RetryExhausted"""
        remote.record_conflicts["p2"] = 2
        batch = await reconciler.save_batch("E1", "T1", [
            {"player_id": "p1", "status": "present"},
            {"player_id": "p2", "status": "present"},
        ])
        assert batch.for_player("p1").applied is True
        assert batch.for_player("p2").error == "RetryExhausted"
        assert remote.remaining("p2") == 10

    async def test_batch_conflict_rereads_state(self, remote, reconciler):
        """배치 충돌 → 상태 재조회 후 1회 재시도"""
        remote.batch_failures = [Conflict("lock timeout")]
        batch = await reconciler.save_batch("E1", "T1", [{"player_id": "p1", "status": "present"}])
        assert batch.all_applied
        assert remote.calls["fetch_attendance_statuses"] == 2

    async def test_batch_conflict_twice(self, remote, reconciler):
        remote.batch_failures = [Conflict("a"), Conflict("b")]
        with pytest.raises(RetryExhausted):
            await reconciler.save_batch("E1", "T1", [{"player_id": "p1", "status": "present"}])

    async def test_network_failure_propagates(self, remote, reconciler):
        """전송 실패는 삼키지 않음"""
        remote.batch_failures = [NetworkError("offline")] * 3
        with pytest.raises(NetworkError):
            await reconciler.save_batch("E1", "T1", [{"player_id": "p1", "status": "present"}])
        assert remote.remaining("p1") == 10

    async def test_timeout_invalidates_cache(self, remote, ledger, synchronizer):
        """타임아웃이면 결과를 모르므로 캐시 무효화"""
        remote.hang_batches = True
        reconciler = AttendanceReconciler(remote, CreditLedgerClient(remote, write_timeout=0.05), synchronizer)
        await synchronizer.read(ResourceType.MEMBERSHIP, "p1")
        generation = synchronizer.cache.generation((ResourceType.MEMBERSHIP, "p1"))

        with pytest.raises(LedgerTimeout):
            await reconciler.save_batch("E1", "T1", [{"player_id": "p1", "status": "present"}])

        assert synchronizer.cache.generation((ResourceType.MEMBERSHIP, "p1")) == generation + 1


# =============================================================================
# 보존 법칙 / 동시성
# =============================================================================

@pytest.mark.asyncio
class TestConsistency:
    """크레딧 보존과 동시 저장"""

    async def test_conservation_over_sequence(self, remote, reconciler):
        """잔여 = 할당 - 순 출석 차감"""
        sequence = [
            ("E1", "p1", P), ("E1", "p1", A), ("E2", "p1", P),
            ("E3", "p1", L), ("E3", "p1", P), ("E1", "p1", P),
            ("E2", "p1", X),
        ]
        for event_id, player_id, status in sequence:
            await reconciler.record(event_id, "T1", player_id, status)

        charged_events = sum(
            -net_attendance_charge(remote.ledger, eid, "p1") for eid in ("E1", "E2", "E3")
        )
        assert charged_events == 2
        assert remote.remaining("p1") == 10 - charged_events
        for eid in ("E1", "E2", "E3"):
            assert net_attendance_charge(remote.ledger, eid, "p1") in (0, -1)

    async def test_concurrent_same_pair_serialized(self, stream):
        """같은 쌍 동시 저장 → 차감 1회"""
        fake = FakeRemote(stream=stream, latency=0.01)
        fake.add_membership(make_membership("p1", allocated=10))
        reconciler = AttendanceReconciler(fake, CreditLedgerClient(fake))

        results = await asyncio.gather(*[
            reconciler.record("E1", "T1", "p1", P) for _ in range(5)
        ])

        assert sum(1 for r in results if r.credited) == 1
        assert len(fake.entries_for("E1", "p1")) == 1
        assert fake.remaining("p1") == 9

    async def test_concurrency_cap(self, stream):
        """동시 쓰기 수 제한"""
        fake = FakeRemote(stream=stream, latency=0.02)
        players = [f"p{i}" for i in range(8)]
        for pid in players:
            fake.add_membership(make_membership(pid))

        active = 0
        peak = 0
        original = fake.save_attendance_batch

        async def tracking(records):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                return await original(records)
            finally:
                active -= 1

        fake.save_attendance_batch = tracking
        reconciler = AttendanceReconciler(fake, CreditLedgerClient(fake), max_concurrent_writes=2)

        await asyncio.gather(*[reconciler.record("E1", "T1", pid, P) for pid in players])
        assert peak <= 2
        assert all(fake.remaining(pid) == 9 for pid in players)

    async def test_cancelled_caller_does_not_abort_write(self, stream):
        """호출자 취소 후에도 원장 쓰기는 완료"""
        fake = FakeRemote(stream=stream, latency=0.05)
        fake.add_membership(make_membership("p1", allocated=10))
        reconciler = AttendanceReconciler(fake, CreditLedgerClient(fake))

        task = asyncio.ensure_future(reconciler.record("E1", "T1", "p1", P))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await reconciler.drain()
        assert reconciler.pending_writes == 0
        assert fake.remaining("p1") == 9
        assert fake.status_of("E1", "p1") == P


@pytest.mark.asyncio
class TestPairLocks:
    """쌍 단위 잠금"""

    async def test_locks_released_and_dropped(self):
        locks = PairLocks()
        async with locks.hold([("E1", "p2"), ("E1", "p1")]):
            assert locks.is_locked(("E1", "p1"))
            assert locks.is_locked(("E1", "p2"))
        assert len(locks) == 0

    async def test_overlapping_batches_do_not_deadlock(self):
        locks = PairLocks()
        order = []

        async def worker(name, keys):
            async with locks.hold(keys):
                order.append(name)
                await asyncio.sleep(0.01)

        await asyncio.wait_for(asyncio.gather(
            worker("a", [("E1", "p1"), ("E1", "p2")]),
            worker("b", [("E1", "p2"), ("E1", "p1")]),
        ), timeout=1.0)
        assert sorted(order) == ["a", "b"]
