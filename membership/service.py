"""
멤버십 서비스

화면/CLI에서 사용하는 단일 진입점.
권한 확인 → 낙관적 표시 → 저장 → 결과 알림 순서로 처리한다.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from enum import Enum
from collections import Counter

from loguru import logger

from database.supabase_client import (
    SupabaseChangeStream,
    SupabaseGateway,
    create_supabase_client,
)

from .cache import ProjectionCache, ResourceType
from .context import SessionContext
from .errors import (
    ERROR_TYPES,
    InsufficientCredit,
    MembershipSyncError,
    NotFound,
    PartialBatchFailure,
    PermissionDenied,
    user_message_for,
)
from .events import ChangeStream
from .ledger import CreditLedgerClient
from .projector import charge_generation, project
from .realtime import Loader, RealtimeSynchronizer, SyncScope
from .reconciler import AttendanceReconciler, MarkInput, PairLocks
from .schemas import (
    AttendanceMark,
    AttendanceRecord,
    AttendanceResult,
    AttendanceStatus,
    BatchResult,
    LedgerEntry,
    LedgerReason,
    MembershipSnapshot,
)


class NotifySeverity(str, Enum):
    """사용자 알림 수준"""
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


Notifier = Callable[[str, NotifySeverity], Any]


def log_notifier(message: str, severity: NotifySeverity) -> None:
    """기본 알림 - 로그로 출력"""
    if severity == NotifySeverity.ERROR:
        logger.error(f"🔔 {message}")
    elif severity == NotifySeverity.WARNING:
        logger.warning(f"🔔 {message}")
    else:
        logger.info(f"🔔 {message}")


def build_loaders(gateway) -> Dict[ResourceType, Loader]:
    """리소스 유형별 원격 조회 함수"""

    async def load_membership(player_id: str) -> Optional[MembershipSnapshot]:
        membership = await gateway.fetch_active_membership(player_id)
        if membership is None:
            return None
        entries = await gateway.fetch_ledger_entries(membership.id)
        return project(membership, entries)

    return {
        ResourceType.MEMBERSHIP: load_membership,
        ResourceType.ATTENDANCE: gateway.fetch_attendance_summary,
        ResourceType.GRADES: gateway.fetch_grade_rows,
    }


class MembershipService:
    """출석 저장, 멤버십 조회, 크레딧 조정"""

    def __init__(
        self,
        gateway,
        stream: ChangeStream,
        context: SessionContext,
        notify: Optional[Notifier] = None,
        cache: Optional[ProjectionCache] = None,
    ):
        self.gateway = gateway
        self.context = context
        self.notify = notify or log_notifier
        self.ledger = CreditLedgerClient(gateway)
        self.synchronizer = RealtimeSynchronizer(stream, build_loaders(gateway), cache)
        self.reconciler = AttendanceReconciler(gateway, self.ledger, self.synchronizer)
        self._adjust_locks = PairLocks()

    @classmethod
    async def connect(
        cls,
        context: SessionContext,
        notify: Optional[Notifier] = None,
    ) -> "MembershipService":
        """Supabase 연결로 서비스 생성"""
        client = await create_supabase_client()
        return cls(SupabaseGateway(client), SupabaseChangeStream(client), context, notify)

    async def close(self) -> None:
        await self.reconciler.drain()
        await self.synchronizer.close()

    # ==================== 출석 ====================

    async def save_attendance(
        self,
        event_id: str,
        team_id: Optional[str],
        marks: Sequence[MarkInput],
        strict: bool = False,
    ) -> BatchResult:
        """
        출석 일괄 저장

        Args:
            event_id: 일정 ID
            team_id: 팀 ID
            marks: 선수별 출석 입력
            strict: True면 일부 실패 시 PartialBatchFailure 발생

        Returns:
            선수별 결과
        """
        try:
            self.context.require(self.context.can_record_attendance(), "출석 기록")
        except PermissionDenied as e:
            self.notify(e.user_message, NotifySeverity.ERROR)
            raise

        optimistic = self._optimistic_records(event_id, team_id, marks)
        if optimistic:
            self.synchronizer.put_optimistic(ResourceType.ATTENDANCE, event_id, optimistic)

        try:
            batch = await self.reconciler.save_batch(
                event_id,
                team_id,
                marks,
                recorded_by=self.context.current_user_id(),
            )
        except MembershipSyncError as e:
            self.notify(e.user_message, NotifySeverity.ERROR)
            raise
        finally:
            # 저장 결과가 나오면 표시는 원격 값 기준
            self.synchronizer.discard_optimistic(ResourceType.ATTENDANCE, event_id)

        self._report(batch)
        if strict and batch.failed:
            raise PartialBatchFailure(batch)
        return batch

    async def record_attendance(
        self,
        event_id: str,
        team_id: Optional[str],
        player_id: str,
        status: Union[AttendanceStatus, str],
        notes: str = "",
    ) -> AttendanceResult:
        """선수 한 명 출석 저장 - 실패하면 해당 오류 발생"""
        batch = await self.save_attendance(
            event_id,
            team_id,
            [{"player_id": player_id, "status": status, "notes": notes}],
        )
        result = batch.results[0]
        if result.error:
            error_type = ERROR_TYPES.get(result.error, MembershipSyncError)
            raise error_type(result.message or "")
        return result

    def _optimistic_records(self, event_id, team_id, marks) -> tuple:
        """현재 표시 중인 출석 목록에 저장 중인 입력을 덮어쓴 목록"""
        current = self.synchronizer.peek(ResourceType.ATTENDANCE, event_id) or ()
        records = {row.player_id: row for row in current}
        for raw in marks:
            data = raw.model_dump() if isinstance(raw, AttendanceMark) else dict(raw)
            try:
                record = AttendanceRecord(
                    event_id=event_id,
                    team_id=team_id,
                    player_id=data.get("player_id"),
                    status=data.get("status"),
                    notes=data.get("notes") or None,
                    recorded_by=self.context.current_user_id(),
                )
            except ValueError:
                # 잘못된 입력은 저장 단계에서 ValidationError로 보고됨
                return ()
            records[record.player_id] = record
        return tuple(records.values())

    def _report(self, batch: BatchResult) -> None:
        """결과 유형별 사용자 알림"""
        if not batch.results:
            return

        if batch.all_applied:
            message = f"{len(batch.succeeded)}명 출석 저장 완료"
            if batch.credited_count:
                message += f" (수업 차감 변경 {batch.credited_count}건)"
            self.notify(message, NotifySeverity.SUCCESS)
            return

        counts = Counter(r.error for r in batch.failed)
        for kind, count in counts.items():
            if kind == InsufficientCredit.__name__:
                names = ", ".join(r.player_id for r in batch.failed if r.error == kind)
                message = f"잔여 수업이 부족해 {count}명 출석을 저장하지 못했습니다: {names}"
            else:
                message = f"{user_message_for(kind)} ({count}명)"
            severity = NotifySeverity.WARNING if batch.succeeded else NotifySeverity.ERROR
            self.notify(message, severity)

        if batch.is_partial:
            self.notify(
                f"{PartialBatchFailure.default_user_message} "
                f"(성공 {len(batch.succeeded)}명 / 실패 {len(batch.failed)}명)",
                NotifySeverity.WARNING,
            )

    # ==================== 멤버십 ====================

    async def snapshot(self, player_id: str, force: bool = False) -> Optional[MembershipSnapshot]:
        """선수 멤버십 스냅샷 (캐시 우선)"""
        self.context.require(self.context.can_view_membership(player_id), "멤버십 조회")
        return await self.synchronizer.read(ResourceType.MEMBERSHIP, player_id, force=force)

    async def verify_snapshot(self, player_id: str) -> bool:
        """로컬 계산과 원격 요약 비교 - 일치하면 True"""
        local = await self.snapshot(player_id, force=True)
        remote = await self.gateway.get_membership_snapshot(player_id)

        if local is None or remote is None:
            matched = local is None and remote is None
        else:
            matched = (
                local.allocated_classes == remote.allocated_classes
                and local.used_classes == remote.used_classes
                and local.remaining_classes == remote.remaining_classes
            )

        if matched:
            logger.info(f"✅ 멤버십 요약 일치: {player_id}")
        else:
            logger.warning(f"⚠️ 멤버십 요약 불일치: {player_id} local={local} remote={remote}")
        return matched

    async def adjust_credits(self, player_id: str, delta: int, note: Optional[str] = None) -> LedgerEntry:
        """관리자 수동 크레딧 조정 (양수 = 추가, 음수 = 차감)"""
        try:
            self.context.require(self.context.can_adjust_credits(), "크레딧 조정")
        except PermissionDenied as e:
            self.notify(e.user_message, NotifySeverity.ERROR)
            raise

        # 같은 선수의 조정은 원장 조회부터 반영까지 직렬화 (세대 번호 중복 방지)
        async with self._adjust_locks.hold([(LedgerReason.MANUAL_ADJUSTMENT.value, player_id)]):
            membership = await self.gateway.fetch_active_membership(player_id)
            if membership is None:
                error = NotFound(f"활성 멤버십 없음: {player_id}")
                self.notify(error.user_message, NotifySeverity.ERROR)
                raise error

            entries = await self.gateway.fetch_ledger_entries(membership.id)
            generation = charge_generation(entries, None, player_id, LedgerReason.MANUAL_ADJUSTMENT)

            try:
                entry = await self.ledger.apply_delta(
                    membership_id=membership.id,
                    player_id=player_id,
                    delta=delta,
                    reason=LedgerReason.MANUAL_ADJUSTMENT,
                    created_by=self.context.current_user_id(),
                    generation=generation,
                )
            except MembershipSyncError as e:
                self.notify(e.user_message, NotifySeverity.ERROR)
                raise

        self.synchronizer.invalidate(ResourceType.MEMBERSHIP, player_id)
        detail = f" - {note}" if note else ""
        self.notify(f"크레딧 {delta:+d} 조정 완료{detail}", NotifySeverity.SUCCESS)
        return entry

    # ==================== 구독 ====================

    async def watch_player(self, player_id: str, name: Optional[str] = None) -> SyncScope:
        """선수 멤버십 구독 범위 (async with 로 사용)"""
        scope = self.synchronizer.scope(name or f"player:{player_id}")
        await scope.watch(ResourceType.MEMBERSHIP, player_id)
        return scope

    async def watch_event(self, event_id: str, name: Optional[str] = None) -> SyncScope:
        """일정 출석/평가 구독 범위"""
        scope = self.synchronizer.scope(name or f"event:{event_id}")
        await scope.watch(ResourceType.ATTENDANCE, event_id)
        await scope.watch(ResourceType.GRADES, event_id)
        return scope
