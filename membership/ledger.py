"""
크레딧 원장 클라이언트

원격 트랜잭션 원장에 멱등 크레딧 변경을 요청한다.
- 멱등 키: (source_event_id, player_id, reason, 세대 번호)의 해시
- Conflict: 백오프 후 1회 재시도, 이후 RetryExhausted
- NetworkError: 제한된 횟수만 지수 백오프 재시도
- 타임아웃: LedgerTimeout, 재시도 없음
- 로컬 캐시는 건드리지 않음
"""

import asyncio
import hashlib
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from loguru import logger

from .config import sync_config
from .errors import (
    Conflict,
    InsufficientCredit,
    LedgerTimeout,
    MembershipSyncError,
    NetworkError,
    NotFound,
    PermissionDenied,
    RetryExhausted,
    ValidationError,
)
from .schemas import LedgerEntry, LedgerReason


def stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def make_idempotency_key(
    source_event_id: Optional[str],
    player_id: str,
    reason: LedgerReason,
    generation: int = 0,
) -> str:
    """같은 요청의 재시도는 항상 같은 키를 만든다"""
    blob = stable_json_dumps({
        "source_event_id": source_event_id,
        "player_id": str(player_id),
        "reason": reason.value,
        "generation": int(generation),
    })
    digest = hashlib.sha256(blob.encode("utf-8")).hexdigest()
    return f"ledger:{digest}"


# 배치 결과의 레코드별 오류 코드
RECORD_ERROR_CODES: Dict[str, Type[MembershipSyncError]] = {
    "insufficient_credit": InsufficientCredit,
    "conflict": Conflict,
    "not_found": NotFound,
    "validation": ValidationError,
    "permission_denied": PermissionDenied,
}


def classify_record_error(code: Optional[str], message: Optional[str]) -> Type[MembershipSyncError]:
    """레코드 오류 코드/메시지 → 오류 유형"""
    if code and code.lower() in RECORD_ERROR_CODES:
        return RECORD_ERROR_CODES[code.lower()]

    lowered = (message or "").lower()
    if "insufficient" in lowered:
        return InsufficientCredit
    if "conflict" in lowered or "concurrent" in lowered:
        return Conflict
    if "not found" in lowered or "no active membership" in lowered:
        return NotFound
    if "permission" in lowered:
        return PermissionDenied
    if "invalid" in lowered:
        return ValidationError
    return MembershipSyncError


class CreditLedgerClient:
    """원장 쓰기 클라이언트"""

    def __init__(
        self,
        gateway,
        write_timeout: Optional[float] = None,
        conflict_retry_delay: Optional[float] = None,
        max_network_retries: Optional[int] = None,
        network_retry_delay: Optional[float] = None,
    ):
        self.gateway = gateway
        self.write_timeout = sync_config.write_timeout_seconds if write_timeout is None else write_timeout
        self.conflict_retry_delay = (
            sync_config.conflict_retry_delay if conflict_retry_delay is None else conflict_retry_delay
        )
        self.max_network_retries = (
            sync_config.max_network_retries if max_network_retries is None else max_network_retries
        )
        self.network_retry_delay = (
            sync_config.network_retry_delay if network_retry_delay is None else network_retry_delay
        )

    idempotency_key = staticmethod(make_idempotency_key)

    async def _write(
        self,
        call: Callable[[], Awaitable[Any]],
        what: str,
        retry_conflict: bool = True,
    ) -> Any:
        """쓰기 실행 - 타임아웃/충돌/네트워크 재시도 정책 적용"""
        conflict_retried = False
        network_retries = 0

        while True:
            try:
                return await asyncio.wait_for(call(), timeout=self.write_timeout)

            except asyncio.TimeoutError as e:
                logger.error(f"⏱️ {what} 타임아웃 ({self.write_timeout}초)")
                raise LedgerTimeout(f"{what} 응답 없음 ({self.write_timeout}초)") from e

            except LedgerTimeout:
                logger.error(f"⏱️ {what} 타임아웃")
                raise

            except Conflict as e:
                if not retry_conflict:
                    raise
                if conflict_retried:
                    logger.error(f"❌ {what} 충돌 재시도 실패: {e.message}")
                    raise RetryExhausted(f"{what} 충돌 재시도 실패: {e.message}") from e
                conflict_retried = True
                logger.warning(f"{what} 충돌, {self.conflict_retry_delay}초 후 재시도: {e.message}")
                await asyncio.sleep(self.conflict_retry_delay)

            except NetworkError as e:
                if network_retries >= self.max_network_retries:
                    logger.error(f"❌ {what} 네트워크 오류 (재시도 {network_retries}회 후): {e.message}")
                    raise
                wait_time = (2 ** network_retries) * self.network_retry_delay
                logger.warning(
                    f"{what} 네트워크 오류, {wait_time}초 후 재시도 "
                    f"({network_retries + 1}/{self.max_network_retries}): {e.message}"
                )
                await asyncio.sleep(wait_time)
                network_retries += 1

    async def apply_delta(
        self,
        membership_id: str,
        player_id: str,
        delta: int,
        reason: LedgerReason,
        source_event_id: Optional[str] = None,
        created_by: Optional[str] = None,
        generation: int = 0,
    ) -> LedgerEntry:
        """
        크레딧 변경 1건 적용

        Args:
            membership_id: 대상 멤버십
            player_id: 선수 ID (멱등 키 구성 요소)
            delta: 부호 있는 변경량 (0 불가)
            reason: 변경 사유
            source_event_id: 출석 관련 사유일 때 필수
            created_by: 요청자
            generation: 같은 (일정, 선수, 사유)로 이미 기록된 항목 수

        Returns:
            기록된 LedgerEntry
        """
        if not membership_id:
            raise ValidationError("membership_id가 필요합니다")
        if int(delta) == 0:
            raise ValidationError("delta는 0이 될 수 없습니다")
        if reason.is_attendance and not source_event_id:
            raise ValidationError(f"{reason.value} 사유에는 source_event_id가 필요합니다")

        key = make_idempotency_key(source_event_id, player_id, reason, generation)

        data = await self._write(
            lambda: self.gateway.apply_membership_delta(
                membership_id=membership_id,
                player_id=player_id,
                delta=int(delta),
                reason=reason.value,
                idempotency_key=key,
                source_event_id=source_event_id,
                created_by=created_by,
            ),
            "크레딧 변경",
        )

        if not data.get("success", True):
            message = data.get("message") or "크레딧 변경 거부"
            error_type = classify_record_error(data.get("code"), message)
            logger.warning(f"크레딧 변경 거부 ({player_id}, {delta:+d}): {message}")
            raise error_type(message)

        logger.info(f"💳 Ledger delta applied: {player_id} {delta:+d} ({reason.value})")

        entry = data.get("entry")
        if entry:
            return LedgerEntry(**entry)
        return LedgerEntry(
            membership_id=membership_id,
            player_id=player_id,
            delta=int(delta),
            reason=reason,
            source_event_id=source_event_id,
            idempotency_key=key,
            created_by=created_by,
        )

    async def save_attendance_batch(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        출석 일괄 저장 (원격 원자적 단일 호출)

        배치 수준 Conflict는 저장된 상태를 다시 읽어야 하므로 여기서 재시도하지 않고
        AttendanceReconciler로 올린다.
        """
        return await self._write(
            lambda: self.gateway.save_attendance_batch(records),
            "출석 일괄 저장",
            retry_conflict=False,
        )
