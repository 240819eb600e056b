"""
출석 저장 조정기(Attendance Reconciler)

출석 상태 변경을 원장 변경과 한 번에 저장한다.

상태 전이 → 원장 변경:
    (없음/비출석) → present : -1 (attendance_present)
    present → 비출석        : +1 (attendance_reversal)
    그 외                    : 원장 변경 없음

- 같은 (일정, 선수) 쌍의 저장은 직렬화 (쌍 단위 잠금)
- 동시 쓰기 수는 세마포어로 제한
- 저장은 일괄 RPC 한 번으로 원자적으로 수행, 결과는 선수별로 보고
- 충돌한 레코드는 상태를 다시 읽어 1회 재전송, 이후 RetryExhausted
- 호출자가 취소해도 이미 보낸 원장 쓰기는 끝까지 진행 (drain()으로 대기 가능)
"""

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .cache import ResourceType
from .config import sync_config
from .errors import (
    ERROR_TYPES,
    Conflict,
    LedgerTimeout,
    MembershipSyncError,
    RetryExhausted,
    ValidationError,
    user_message_for,
)
from .ledger import CreditLedgerClient, classify_record_error
from .projector import charge_generation
from .schemas import (
    AttendanceMark,
    AttendanceResult,
    AttendanceStatus,
    BatchResult,
    LedgerReason,
)


PairKey = Tuple[str, str]


def transition_delta(
    previous: Optional[AttendanceStatus],
    requested: AttendanceStatus,
) -> Optional[Tuple[int, LedgerReason]]:
    """상태 전이에 필요한 원장 변경 (없으면 None)"""
    was_charged = previous is not None and previous.is_charged
    if requested.is_charged and not was_charged:
        return -1, LedgerReason.ATTENDANCE_PRESENT
    if was_charged and not requested.is_charged:
        return 1, LedgerReason.ATTENDANCE_REVERSAL
    return None


class PairLocks:
    """(일정, 선수) 쌍 단위 잠금 - 사용 중인 잠금만 보관"""

    def __init__(self):
        self._locks: Dict[PairKey, asyncio.Lock] = {}
        self._users: Dict[PairKey, int] = {}

    @asynccontextmanager
    async def hold(self, keys: Iterable[PairKey]):
        # 정렬 순서로 획득해 교착 방지
        ordered = sorted(set(keys))
        for key in ordered:
            self._users[key] = self._users.get(key, 0) + 1
            self._locks.setdefault(key, asyncio.Lock())
        try:
            async with AsyncExitStack() as stack:
                for key in ordered:
                    await stack.enter_async_context(self._locks[key])
                yield
        finally:
            for key in ordered:
                self._users[key] -= 1
                if self._users[key] == 0:
                    self._users.pop(key, None)
                    self._locks.pop(key, None)

    def is_locked(self, key: PairKey) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


MarkInput = Union[AttendanceMark, Dict[str, Any]]


class AttendanceReconciler:
    """출석 저장 + 크레딧 원장 조정"""

    def __init__(
        self,
        gateway,
        ledger: CreditLedgerClient,
        synchronizer=None,
        max_concurrent_writes: Optional[int] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.synchronizer = synchronizer
        limit = max_concurrent_writes or sync_config.max_concurrent_writes
        self._semaphore = asyncio.Semaphore(limit)
        self._locks = PairLocks()
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    # ==================== 공개 API ====================

    async def record(
        self,
        event_id: str,
        team_id: Optional[str],
        player_id: str,
        status: Union[AttendanceStatus, str],
        notes: str = "",
        recorded_by: Optional[str] = None,
    ) -> AttendanceResult:
        """
        선수 한 명 출석 저장

        실패하면 해당 오류 유형의 예외를 발생 (예: InsufficientCredit)
        """
        batch = await self.save_batch(
            event_id,
            team_id,
            [{"player_id": player_id, "status": status, "notes": notes}],
            recorded_by=recorded_by,
        )
        result = batch.results[0]
        if result.error:
            error_type = ERROR_TYPES.get(result.error, MembershipSyncError)
            raise error_type(result.message or "")
        return result

    async def save_batch(
        self,
        event_id: str,
        team_id: Optional[str],
        marks: Sequence[MarkInput],
        recorded_by: Optional[str] = None,
    ) -> BatchResult:
        """
        여러 선수 출석 일괄 저장

        Returns:
            선수별 결과. 일부 실패해도 성공한 기록은 유지 (롤백 없음)

        Raises:
            ValidationError: 입력 오류 (전송 전)
            NetworkError / LedgerTimeout: 배치 전체 전송 실패
        """
        checked = self._validate(event_id, marks)
        if not checked:
            return BatchResult(event_id=str(event_id), results=[])

        task = asyncio.ensure_future(
            self._save(str(event_id), team_id, checked, recorded_by)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        # 호출자 취소가 원장 쓰기를 중단시키지 않도록
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """진행 중인 저장이 모두 끝날 때까지 대기"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ==================== 내부 ====================

    def _validate(self, event_id: str, marks: Sequence[MarkInput]) -> List[AttendanceMark]:
        if not event_id:
            raise ValidationError("event_id가 필요합니다")

        checked: List[AttendanceMark] = []
        seen: Set[str] = set()
        for raw in marks:
            try:
                mark = raw if isinstance(raw, AttendanceMark) else AttendanceMark(**raw)
            except PydanticValidationError as e:
                raise ValidationError(f"잘못된 출석 입력: {e.errors()[0].get('msg')}") from e
            if mark.player_id in seen:
                raise ValidationError(f"중복된 선수: {mark.player_id}")
            seen.add(mark.player_id)
            checked.append(mark)
        return checked

    async def _save(
        self,
        event_id: str,
        team_id: Optional[str],
        marks: List[AttendanceMark],
        recorded_by: Optional[str],
    ) -> BatchResult:
        try:
            results = await self._save_locked(event_id, team_id, marks, recorded_by)
        except LedgerTimeout:
            # 결과를 알 수 없음 - 다음 조회가 원격 상태를 다시 읽도록
            self._invalidate_all(event_id, [m.player_id for m in marks])
            raise

        batch = BatchResult(event_id=event_id, results=[results[m.player_id] for m in marks])
        self._invalidate(event_id, batch)

        if batch.all_applied:
            logger.info(
                f"✅ 출석 저장 완료: {event_id} "
                f"{len(batch.succeeded)}명 (차감 변경 {batch.credited_count}건)"
            )
        else:
            logger.warning(
                f"⚠️ 출석 일부 실패: {event_id} "
                f"성공 {len(batch.succeeded)} / 실패 {len(batch.failed)}"
            )
        return batch

    async def _save_locked(
        self,
        event_id: str,
        team_id: Optional[str],
        marks: List[AttendanceMark],
        recorded_by: Optional[str],
    ) -> Dict[str, AttendanceResult]:
        async with self._semaphore:
            async with self._locks.hold((event_id, m.player_id) for m in marks):
                try:
                    results = await self._attempt(event_id, team_id, marks, recorded_by)
                except Conflict as e:
                    logger.warning(f"출석 일괄 저장 충돌, 재시도: {e.message}")
                    await asyncio.sleep(self.ledger.conflict_retry_delay)
                    try:
                        results = await self._attempt(event_id, team_id, marks, recorded_by)
                    except Conflict as retry_error:
                        raise RetryExhausted(
                            f"출석 일괄 저장 충돌 재시도 실패: {retry_error.message}"
                        ) from retry_error

                conflicted = [
                    m for m in marks
                    if results[m.player_id].error == Conflict.__name__
                ]
                if conflicted:
                    logger.warning(f"충돌 {len(conflicted)}건 재시도 ({event_id})")
                    await asyncio.sleep(self.ledger.conflict_retry_delay)
                    retried = await self._attempt(event_id, team_id, conflicted, recorded_by)
                    for mark in conflicted:
                        result = retried[mark.player_id]
                        if result.error == Conflict.__name__:
                            result = result.model_copy(update={
                                "error": RetryExhausted.__name__,
                                "message": RetryExhausted.default_user_message,
                            })
                        results[mark.player_id] = result
        return results

    async def _attempt(
        self,
        event_id: str,
        team_id: Optional[str],
        marks: List[AttendanceMark],
        recorded_by: Optional[str],
    ) -> Dict[str, AttendanceResult]:
        """현재 저장 상태를 읽고 배치를 한 번 전송"""
        player_ids = [m.player_id for m in marks]
        previous = await self.gateway.fetch_attendance_statuses(event_id, player_ids)
        history = await self.gateway.fetch_event_ledger(event_id, player_ids)

        records = []
        deltas: Dict[str, int] = {}
        for mark in marks:
            prev = previous.get(mark.player_id)
            change = transition_delta(prev, mark.status)
            delta, reason, key = 0, None, None
            if change is not None:
                delta, reason = change
                generation = charge_generation(history, event_id, mark.player_id, reason)
                key = self.ledger.idempotency_key(event_id, mark.player_id, reason, generation)
            deltas[mark.player_id] = delta

            records.append({
                "event_id": event_id,
                "team_id": team_id,
                "player_id": mark.player_id,
                "status": mark.status.value,
                "notes": mark.notes,
                "recorded_by": recorded_by,
                "expected_previous_status": prev.value if prev else None,
                "delta": delta,
                "reason": reason.value if reason else None,
                "idempotency_key": key,
            })

        rows = await self.ledger.save_attendance_batch(records)
        by_player = {str(row.get("player_id")): row for row in rows}

        results: Dict[str, AttendanceResult] = {}
        for mark in marks:
            row = by_player.get(mark.player_id)
            if row is None:
                results[mark.player_id] = AttendanceResult(
                    player_id=mark.player_id,
                    status=mark.status,
                    applied=False,
                    error=MembershipSyncError.__name__,
                    message="저장 결과를 받지 못했습니다",
                )
                continue
            results[mark.player_id] = self._to_result(mark, row, deltas[mark.player_id])
        return results

    @staticmethod
    def _to_result(mark: AttendanceMark, row: Dict[str, Any], delta: int) -> AttendanceResult:
        if row.get("status") == "error" or row.get("success") is False:
            error_type = classify_record_error(row.get("code"), row.get("message"))
            return AttendanceResult(
                player_id=mark.player_id,
                status=mark.status,
                applied=False,
                error=error_type.__name__,
                message=row.get("message") or user_message_for(error_type.__name__),
                remaining=row.get("remaining"),
            )

        credited = bool(row.get("credited", row.get("membership_deducted", False)))
        return AttendanceResult(
            player_id=mark.player_id,
            status=mark.status,
            applied=True,
            credited=credited,
            delta=delta if credited else 0,
            message=row.get("message"),
            remaining=row.get("remaining"),
        )

    def _invalidate(self, event_id: str, batch: BatchResult) -> None:
        if self.synchronizer is None:
            return
        self.synchronizer.invalidate(ResourceType.ATTENDANCE, event_id)
        for result in batch.results:
            if result.credited:
                self.synchronizer.invalidate(ResourceType.MEMBERSHIP, result.player_id)

    def _invalidate_all(self, event_id: str, player_ids: List[str]) -> None:
        if self.synchronizer is None:
            return
        self.synchronizer.invalidate(ResourceType.ATTENDANCE, event_id)
        for player_id in player_ids:
            self.synchronizer.invalidate(ResourceType.MEMBERSHIP, player_id)
