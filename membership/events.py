"""
변경 스트림(change-stream) 이벤트

원격 테이블의 행 단위 변경 알림을 표현하고, 구독 채널을 여닫는 인터페이스를 정의한다.
Supabase Realtime 어댑터는 database.supabase_client.SupabaseChangeStream,
프로세스 내부 구현은 LocalChangeStream.
"""

from typing import Dict, Any, List, Callable, Optional, Protocol, Tuple
from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field
from loguru import logger
import asyncio
import itertools


class ChangeOperation(str, Enum):
    """행 변경 유형"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "ChangeOperation":
        normalized = (value or "").strip().lower()
        for op in cls:
            if op.value == normalized:
                return op
        return cls.UPDATE


@dataclass(frozen=True)
class ChangeTopic:
    """테이블 + 필터 (예: membership_ledger, player_id = 42)"""
    table: str
    column: str
    value: str
    schema: str = "public"

    @property
    def filter_expression(self) -> str:
        """Realtime 필터 문자열"""
        return f"{self.column}=eq.{self.value}"

    def matches(self, event: "ChangeEvent") -> bool:
        if event.table != self.table:
            return False
        scoped = event.scope_value(self.column)
        return scoped is not None and str(scoped) == self.value


@dataclass
class ChangeEvent:
    """행 변경 알림"""
    operation: ChangeOperation
    table: str
    row: Dict[str, Any] = field(default_factory=dict)
    old_row: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = "realtime"

    def scope_value(self, column: str) -> Any:
        """필터 컬럼 값 (delete는 이전 행에서)"""
        if column in self.row:
            return self.row[column]
        if self.old_row:
            return self.old_row.get(column)
        return None


ChangeCallback = Callable[[ChangeEvent], Any]


@dataclass
class ChannelHandle:
    """열린 구독 채널"""
    name: str
    topics: Tuple[ChangeTopic, ...]
    callback: ChangeCallback
    channel: Any = None   # 어댑터별 채널 객체


class ChangeStream(Protocol):
    """변경 스트림 인터페이스"""

    async def open_channel(
        self,
        name: str,
        topics: Tuple[ChangeTopic, ...],
        callback: ChangeCallback,
    ) -> ChannelHandle:
        ...

    async def close_channel(self, handle: ChannelHandle) -> None:
        ...


def parse_realtime_payload(payload: Dict[str, Any], table: Optional[str] = None) -> ChangeEvent:
    """
    Supabase Realtime postgres_changes 페이로드 → ChangeEvent

    버전별로 {"data": {"type", "record", "old_record"}} 또는
    {"eventType", "new", "old"} 형태로 전달됨
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    operation = data.get("type") or data.get("eventType") or data.get("event")
    row = data.get("record") or data.get("new") or {}
    old_row = data.get("old_record") or data.get("old") or None
    return ChangeEvent(
        operation=ChangeOperation.from_string(operation),
        table=data.get("table") or table or "",
        row=dict(row),
        old_row=dict(old_row) if old_row else None,
    )


class LocalChangeStream:
    """
    프로세스 내부 변경 스트림

    로컬 쓰기 에코 및 테스트에 사용. publish() 된 이벤트를
    토픽이 일치하는 열린 채널로 전달한다.
    """

    def __init__(self, max_log_size: int = 1000):
        self._channels: Dict[int, ChannelHandle] = {}
        self._ids = itertools.count(1)
        self._event_log: List[ChangeEvent] = []
        self._max_log_size = max_log_size

    @property
    def open_channels(self) -> List[ChannelHandle]:
        return list(self._channels.values())

    async def open_channel(
        self,
        name: str,
        topics: Tuple[ChangeTopic, ...],
        callback: ChangeCallback,
    ) -> ChannelHandle:
        handle = ChannelHandle(name=name, topics=tuple(topics), callback=callback)
        handle.channel = next(self._ids)
        self._channels[handle.channel] = handle
        logger.debug(f"✅ Channel opened: {name}")
        return handle

    async def close_channel(self, handle: ChannelHandle) -> None:
        if self._channels.pop(handle.channel, None) is not None:
            logger.debug(f"❌ Channel closed: {handle.name}")

    def _record(self, event: ChangeEvent) -> None:
        self._event_log.append(event)
        if len(self._event_log) > self._max_log_size:
            self._event_log = self._event_log[-self._max_log_size:]

    def _matching(self, event: ChangeEvent) -> List[ChannelHandle]:
        return [
            h for h in list(self._channels.values())
            if any(t.matches(event) for t in h.topics)
        ]

    def publish(self, event: ChangeEvent) -> int:
        """이벤트 발행 - 전달된 채널 수 반환"""
        logger.debug(f"📢 Change published: {event.operation.value} {event.table}")
        self._record(event)

        delivered = 0
        for handle in self._matching(event):
            try:
                result = handle.callback(event)
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
                delivered += 1
            except Exception as e:
                logger.error(f"구독자 호출 실패 ({handle.name}): {e}")
        return delivered

    def get_recent_events(self, limit: int = 100) -> List[ChangeEvent]:
        """최근 이벤트 조회"""
        return self._event_log[-limit:]
