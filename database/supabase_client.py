"""
Supabase 원격 서비스 클라이언트

원장/출석 RPC, 조회용 테이블, Realtime 변경 스트림을 감싼다.
원격 오류는 membership.errors 분류로 변환해서 올린다.
"""
import asyncio
from typing import List, Optional, Dict, Any, Callable, Set, Tuple

import httpx
from loguru import logger
from postgrest.exceptions import APIError
from supabase import acreate_client, AsyncClient

from membership.config import supabase_config, sync_config, Tables, Procedures
from membership.errors import (
    MembershipSyncError,
    ValidationError,
    InsufficientCredit,
    Conflict,
    NotFound,
    NetworkError,
    LedgerTimeout,
    PermissionDenied,
)
from membership.events import (
    ChangeCallback,
    ChangeTopic,
    ChannelHandle,
    parse_realtime_payload,
)
from membership.schemas import (
    AttendanceRecord,
    AttendanceStatus,
    LedgerEntry,
    Membership,
    MembershipSnapshot,
)


async def create_supabase_client() -> AsyncClient:
    """설정값으로 비동기 Supabase 클라이언트 생성"""
    if not supabase_config.supabase_url or not supabase_config.supabase_key:
        raise ValueError("SUPABASE_URL과 SUPABASE_KEY 환경변수를 설정해주세요")
    return await acreate_client(
        supabase_config.supabase_url,
        supabase_config.supabase_key
    )


# ==================== 오류 변환 ====================

CONFLICT_CODES = {"40001", "40P01", "23505"}
NOT_FOUND_CODES = {"P0002", "PGRST116"}
VALIDATION_CODES = {"22023", "22P02", "23502", "23514"}
PERMISSION_CODES = {"42501", "PGRST301"}


def translate_error(exc: Exception) -> MembershipSyncError:
    """PostgREST/httpx 예외 → 동기화 오류"""
    if isinstance(exc, MembershipSyncError):
        return exc

    if isinstance(exc, APIError):
        code = str(exc.code or "")
        message = str(exc.message or exc)
        lowered = message.lower()

        if "insufficient" in lowered:
            return InsufficientCredit(message)
        if code in CONFLICT_CODES or "conflict" in lowered:
            return Conflict(message)
        if code in NOT_FOUND_CODES or "not found" in lowered:
            return NotFound(message)
        if code in PERMISSION_CODES:
            return PermissionDenied(message)
        if code in VALIDATION_CODES:
            return ValidationError(message)
        return MembershipSyncError(f"원격 오류 [{code}]: {message}")

    if isinstance(exc, httpx.TimeoutException):
        return LedgerTimeout(f"응답 시간 초과: {exc}")
    if isinstance(exc, (httpx.TransportError, OSError)):
        return NetworkError(f"전송 실패: {exc}")

    return MembershipSyncError(str(exc))


class SupabaseGateway:
    """
    원격 트랜잭션 서비스 게이트웨이

    - RPC: save_attendance_batch, apply_membership_delta, get_membership_snapshot
    - 조회: 멤버십, 원장, 출석, 평가, 사용량 뷰
    """

    def __init__(
        self,
        client: AsyncClient,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.client = client
        self.max_retries = sync_config.max_network_retries if max_retries is None else max_retries
        self.retry_delay = sync_config.network_retry_delay if retry_delay is None else retry_delay

    @classmethod
    async def connect(cls) -> "SupabaseGateway":
        return cls(await create_supabase_client())

    async def _execute(self, build: Callable[[], Any], what: str, retry: bool = True) -> Any:
        """
        쿼리 실행 및 오류 변환

        조회(retry=True)는 네트워크 오류 시 지수 백오프로 재시도.
        쓰기는 재시도 정책을 CreditLedgerClient가 결정하므로 retry=False.
        """
        retry_count = 0
        while True:
            try:
                return await build().execute()
            except Exception as e:
                error = translate_error(e)
                if retry and isinstance(error, NetworkError) and retry_count < self.max_retries:
                    wait_time = (2 ** retry_count) * self.retry_delay
                    logger.warning(
                        f"{what} 실패, {wait_time}초 후 재시도 ({retry_count + 1}/{self.max_retries}): {e}"
                    )
                    await asyncio.sleep(wait_time)
                    retry_count += 1
                    continue
                logger.error(f"{what} 오류: {error.message}")
                raise error from e

    # ==================== RPC ====================

    async def save_attendance_batch(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """출석 일괄 저장 + 원장 반영 (원자적 단일 호출)"""
        response = await self._execute(
            lambda: self.client.rpc(Procedures.SAVE_ATTENDANCE_BATCH, {"p_records": records}),
            "출석 일괄 저장",
            retry=False,
        )
        return list(response.data or [])

    async def apply_membership_delta(
        self,
        membership_id: str,
        player_id: str,
        delta: int,
        reason: str,
        idempotency_key: str,
        source_event_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """멤버십 크레딧 변경 (멱등 키 기준 1회 적용)"""
        response = await self._execute(
            lambda: self.client.rpc(Procedures.APPLY_MEMBERSHIP_DELTA, {
                "p_membership_id": membership_id,
                "p_player_id": player_id,
                "p_delta": delta,
                "p_reason": reason,
                "p_source_event_id": source_event_id,
                "p_idempotency_key": idempotency_key,
                "p_created_by": created_by,
            }),
            "크레딧 변경",
            retry=False,
        )
        data = response.data
        if isinstance(data, list):
            data = data[0] if data else {}
        return dict(data or {})

    async def get_membership_snapshot(self, player_id: str) -> Optional[MembershipSnapshot]:
        """원격에서 계산한 멤버십 요약"""
        response = await self._execute(
            lambda: self.client.rpc(Procedures.GET_MEMBERSHIP_SNAPSHOT, {"p_player_id": player_id}),
            "멤버십 요약 조회",
        )
        data = response.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            return None
        return MembershipSnapshot(**data)

    async def auto_deactivate_players(self) -> int:
        """만료/소진 멤버십 자동 비활성화"""
        response = await self._execute(
            lambda: self.client.rpc(Procedures.AUTO_DEACTIVATE_PLAYERS, {}),
            "자동 비활성화",
            retry=False,
        )
        data = response.data
        if isinstance(data, list):
            data = data[0] if data else {}
        return int((data or {}).get("deactivated_count", 0))

    # ==================== 멤버십/원장 ====================

    async def fetch_active_membership(self, player_id: str) -> Optional[Membership]:
        """선수의 활성 멤버십 (최신 시작일 기준 1건)"""
        response = await self._execute(
            lambda: self.client.table(Tables.MEMBERSHIPS).select("*")
            .eq("player_id", player_id)
            .eq("status", "active")
            .order("start_date", desc=True)
            .limit(1),
            "활성 멤버십 조회",
        )
        rows = response.data or []
        return Membership(**rows[0]) if rows else None

    async def fetch_ledger_entries(self, membership_id: str) -> List[LedgerEntry]:
        """멤버십 원장 전체"""
        response = await self._execute(
            lambda: self.client.table(Tables.LEDGER).select("*")
            .eq("membership_id", membership_id)
            .order("created_at"),
            "원장 조회",
        )
        return [LedgerEntry(**row) for row in response.data or []]

    async def fetch_event_ledger(self, event_id: str, player_ids: List[str]) -> List[LedgerEntry]:
        """일정에 연결된 출석 원장 항목"""
        if not player_ids:
            return []
        response = await self._execute(
            lambda: self.client.table(Tables.LEDGER).select("*")
            .eq("source_event_id", event_id)
            .in_("player_id", player_ids),
            "일정 원장 조회",
        )
        return [LedgerEntry(**row) for row in response.data or []]

    # ==================== 출석 ====================

    async def fetch_attendance_statuses(
        self,
        event_id: str,
        player_ids: List[str],
    ) -> Dict[str, AttendanceStatus]:
        """현재 저장된 출석 상태 (선수 ID → 상태)"""
        if not player_ids:
            return {}
        response = await self._execute(
            lambda: self.client.table(Tables.ATTENDANCE).select("player_id, status")
            .eq("schedule_id", event_id)
            .in_("player_id", player_ids),
            "출석 상태 조회",
        )
        return {
            str(row["player_id"]): AttendanceStatus(row["status"])
            for row in response.data or []
            if row.get("status")
        }

    async def fetch_attendance_summary(self, event_id: str) -> Tuple[AttendanceRecord, ...]:
        """일정의 출석 목록 - 보조 조회라 실패 시 빈 값"""
        try:
            response = await self._execute(
                lambda: self.client.table(Tables.ATTENDANCE)
                .select("id, schedule_id, player_id, team_id, status, notes, marked_by, marked_at")
                .eq("schedule_id", event_id),
                "출석 목록 조회",
            )
        except MembershipSyncError as e:
            logger.warning(f"출석 목록 조회 실패 (무시): {e.message}")
            return ()

        return tuple(
            AttendanceRecord(
                id=row.get("id"),
                event_id=row.get("schedule_id") or event_id,
                player_id=row["player_id"],
                team_id=row.get("team_id"),
                status=row["status"],
                notes=row.get("notes"),
                recorded_by=row.get("marked_by"),
                recorded_at=row.get("marked_at"),
            )
            for row in response.data or []
        )

    async def fetch_grade_rows(self, event_id: str) -> Tuple[Dict[str, Any], ...]:
        """일정 평가 행 - 보조 조회라 실패 시 빈 값"""
        try:
            response = await self._execute(
                lambda: self.client.table(Tables.GRADES).select("*").eq("event_id", event_id),
                "평가 조회",
            )
        except MembershipSyncError as e:
            logger.warning(f"평가 조회 실패 (무시): {e.message}")
            return ()
        return tuple(response.data or [])

    # ==================== 유지보수 ====================

    async def fetch_membership_usage(self) -> List[MembershipSnapshot]:
        """활성 멤버십 사용량 뷰"""
        response = await self._execute(
            lambda: self.client.table(Tables.MEMBERSHIP_USAGE).select("*"),
            "멤버십 사용량 조회",
        )
        return [MembershipSnapshot(**row) for row in response.data or []]

    async def fetch_sent_alert_codes(self, membership_id: str) -> Set[str]:
        response = await self._execute(
            lambda: self.client.table(Tables.ALERTS_SENT).select("alert_code")
            .eq("player_membership_id", membership_id),
            "발송 알림 조회",
        )
        return {row["alert_code"] for row in response.data or []}

    async def mark_alert_sent(self, membership_id: str, alert_code: str) -> None:
        await self._execute(
            lambda: self.client.table(Tables.ALERTS_SENT).insert({
                "player_membership_id": membership_id,
                "alert_code": alert_code,
            }),
            "알림 발송 기록",
            retry=False,
        )


class SupabaseChangeStream:
    """Supabase Realtime postgres_changes 어댑터"""

    def __init__(self, client: AsyncClient):
        self.client = client

    async def open_channel(
        self,
        name: str,
        topics: Tuple[ChangeTopic, ...],
        callback: ChangeCallback,
    ) -> ChannelHandle:
        channel = self.client.channel(name)
        for topic in topics:
            channel.on_postgres_changes(
                "*",
                schema=topic.schema,
                table=topic.table,
                filter=topic.filter_expression,
                callback=lambda payload, table=topic.table: callback(
                    parse_realtime_payload(payload, table)
                ),
            )
        await channel.subscribe()
        logger.debug(f"✅ Realtime channel subscribed: {name}")
        return ChannelHandle(name=name, topics=tuple(topics), callback=callback, channel=channel)

    async def close_channel(self, handle: ChannelHandle) -> None:
        await self.client.remove_channel(handle.channel)
        logger.debug(f"❌ Realtime channel removed: {handle.name}")
