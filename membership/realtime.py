"""
실시간 캐시 동기화

원격 변경 스트림을 구독해 (리소스 유형, 범위 ID) 단위 캐시를 무효화/재조회한다.

- 같은 키의 동시 조회는 하나의 원격 요청으로 합침 (single-flight)
- 구독 채널은 키당 1개, 여러 SyncScope가 공유 (참조 카운트)
- 마지막 SyncScope가 해제되면 채널을 닫고 예약된 재조회를 취소
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from loguru import logger

from .cache import CacheKey, MISSING, ProjectionCache, ResourceType, cache_key, freeze
from .config import Tables
from .events import ChangeEvent, ChangeStream, ChangeTopic, ChannelHandle


# 리소스 유형별 구독 테이블과 범위 컬럼
RESOURCE_TOPICS: Dict[ResourceType, Tuple[Tuple[str, str], ...]] = {
    ResourceType.MEMBERSHIP: (
        (Tables.MEMBERSHIPS, "player_id"),
        (Tables.LEDGER, "player_id"),
    ),
    ResourceType.ATTENDANCE: (
        (Tables.ATTENDANCE, "schedule_id"),
    ),
    ResourceType.GRADES: (
        (Tables.GRADES, "event_id"),
    ),
}

Loader = Callable[[str], Awaitable[Any]]


def topics_for(key: CacheKey) -> Tuple[ChangeTopic, ...]:
    resource, scope_id = key
    return tuple(
        ChangeTopic(table=table, column=column, value=scope_id)
        for table, column in RESOURCE_TOPICS[resource]
    )


def channel_name(key: CacheKey) -> str:
    resource, scope_id = key
    return f"{resource.value}:{scope_id}"


class SubscriptionRegistry:
    """
    키별 구독 채널 레지스트리

    소유자(SyncScope 참조 토큰) 집합으로 참조를 세고, 첫 소유자가 채널을 열고
    마지막 소유자가 닫는다.
    """

    def __init__(self, stream: ChangeStream):
        self.stream = stream
        self._channels: Dict[CacheKey, ChannelHandle] = {}
        self._owners: Dict[CacheKey, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def acquire(
        self,
        key: CacheKey,
        owner: str,
        callback: Callable[[ChangeEvent], Any],
    ) -> bool:
        """구독 참조 추가 - 채널을 새로 열었으면 True"""
        async with self._lock:
            owners = self._owners.setdefault(key, set())
            owners.add(owner)
            if key in self._channels:
                return False
            try:
                handle = await self.stream.open_channel(channel_name(key), topics_for(key), callback)
            except Exception:
                owners.discard(owner)
                if not owners:
                    self._owners.pop(key, None)
                raise
            self._channels[key] = handle
            logger.info(f"📡 구독 시작: {handle.name}")
            return True

    async def release(self, key: CacheKey, owner: str) -> bool:
        """구독 참조 제거 - 채널을 닫았으면 True"""
        async with self._lock:
            owners = self._owners.get(key)
            if owners is None:
                return False
            owners.discard(owner)
            if owners:
                return False
            self._owners.pop(key, None)
            handle = self._channels.pop(key, None)
            if handle is None:
                return False
            await self.stream.close_channel(handle)
            logger.info(f"📴 구독 종료: {handle.name}")
            return True

    async def close_all(self) -> None:
        async with self._lock:
            handles = list(self._channels.values())
            self._channels.clear()
            self._owners.clear()
            for handle in handles:
                await self.stream.close_channel(handle)
        if handles:
            logger.info(f"📴 구독 {len(handles)}개 종료")

    def is_watched(self, key: CacheKey) -> bool:
        return key in self._channels

    def owners(self, key: CacheKey) -> Set[str]:
        return set(self._owners.get(key, ()))

    def __len__(self) -> int:
        return len(self._channels)


class SyncScope:
    """
    화면/작업 단위 구독 범위

    async with 블록을 벗어나면 이 범위가 연 구독을 모두 해제한다.

    사용 예:
        async with synchronizer.scope("attendance-screen") as scope:
            await scope.watch(ResourceType.ATTENDANCE, event_id)
            rows = await scope.read(ResourceType.ATTENDANCE, event_id)
    """

    def __init__(self, synchronizer: "RealtimeSynchronizer", name: str, owner: Optional[str] = None):
        self.synchronizer = synchronizer
        self.name = name
        # 구독 참조 토큰 - 같은 이름의 범위가 여러 개여도 각자 참조
        self.owner = owner or name
        self._keys: Set[CacheKey] = set()
        self._released = False

    @property
    def keys(self) -> Set[CacheKey]:
        return set(self._keys)

    async def watch(self, resource: ResourceType, scope_id: Any) -> CacheKey:
        if self._released:
            raise RuntimeError(f"이미 해제된 범위입니다: {self.name}")
        key = cache_key(resource, scope_id)
        if key not in self._keys:
            await self.synchronizer.subscribe(key, self.owner)
            self._keys.add(key)
        return key

    async def unwatch(self, resource: ResourceType, scope_id: Any) -> None:
        key = cache_key(resource, scope_id)
        if key in self._keys:
            self._keys.discard(key)
            await self.synchronizer.unsubscribe(key, self.owner)

    async def read(self, resource: ResourceType, scope_id: Any, force: bool = False) -> Any:
        return await self.synchronizer.read(resource, scope_id, force=force)

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        keys, self._keys = self._keys, set()
        for key in keys:
            await self.synchronizer.unsubscribe(key, self.owner)

    async def __aenter__(self) -> "SyncScope":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class RealtimeSynchronizer:
    """
    캐시 + 구독 + 조회기(loader) 조합

    loaders: 리소스 유형별 async 조회 함수 (scope_id → 값)
    """

    def __init__(
        self,
        stream: ChangeStream,
        loaders: Dict[ResourceType, Loader],
        cache: Optional[ProjectionCache] = None,
    ):
        self.stream = stream
        self.loaders = dict(loaders)
        self.cache = cache if cache is not None else ProjectionCache()
        self.registry = SubscriptionRegistry(stream)
        self._inflight: Dict[CacheKey, Tuple[asyncio.Task, int]] = {}
        self._refetches: Dict[CacheKey, asyncio.Task] = {}
        self._waiters: Dict[CacheKey, int] = {}
        self._scope_counter = 0
        self.fetch_count = 0

    # ==================== 조회 ====================

    async def read(self, resource: ResourceType, scope_id: Any, force: bool = False) -> Any:
        """캐시 조회, 없거나 만료되면 원격 조회"""
        key = cache_key(resource, scope_id)
        if not force:
            value = self.cache.lookup(key)
            if value is not MISSING:
                return value
        return await self._fetch(key)

    def peek(self, resource: ResourceType, scope_id: Any, default: Any = None) -> Any:
        """원격 조회 없이 현재 표시 값 (낙관적 값 우선)"""
        return self.cache.peek(cache_key(resource, scope_id), default)

    async def _fetch(self, key: CacheKey, background: bool = False) -> Any:
        # 무효화 이전에 시작된 조회에는 합류하지 않음
        generation = self.cache.generation(key)
        inflight = self._inflight.get(key)
        if inflight is None or inflight[1] != generation or inflight[0].done():
            task = asyncio.ensure_future(self._load(key, generation))
            self._inflight[key] = (task, generation)
            task.add_done_callback(lambda t, key=key: self._forget_inflight(key, t))
        else:
            task = inflight[0]
        if background:
            return await asyncio.shield(task)

        # 한 호출자의 취소가 다른 대기자의 조회를 취소하지 않도록
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            return await asyncio.shield(task)
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                self._waiters.pop(key, None)

    def _forget_inflight(self, key: CacheKey, task: asyncio.Task) -> None:
        inflight = self._inflight.get(key)
        if inflight is not None and inflight[0] is task:
            self._inflight.pop(key, None)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"조회 실패 {channel_name(key)}: {task.exception()}")

    async def _load(self, key: CacheKey, generation: int) -> Any:
        resource, scope_id = key
        loader = self.loaders.get(resource)
        if loader is None:
            raise KeyError(f"조회기가 없는 리소스 유형: {resource.value}")

        self.fetch_count += 1
        value = await loader(scope_id)

        if self.cache.generation(key) != generation:
            # 조회 중 무효화됨 - 오래된 값은 캐시에 넣지 않음
            logger.debug(f"조회 중 무효화: {channel_name(key)}")
            return freeze(value)

        return self.cache.set(key, value)

    # ==================== 무효화 ====================

    def invalidate(self, resource: ResourceType, scope_id: Any) -> None:
        """로컬 쓰기 후 무효화 - 구독 중인 키면 재조회 예약"""
        self._invalidate(cache_key(resource, scope_id))

    def _invalidate(self, key: CacheKey) -> None:
        self.cache.invalidate(key)
        if self.registry.is_watched(key):
            self._schedule_refetch(key)

    def _on_change(self, key: CacheKey, event: ChangeEvent) -> None:
        logger.debug(f"🔔 변경 수신 {channel_name(key)}: {event.operation.value} {event.table}")
        self._invalidate(key)

    def _schedule_refetch(self, key: CacheKey) -> None:
        pending = self._refetches.get(key)
        if pending is not None and not pending.done():
            return
        task = asyncio.ensure_future(self._refetch(key))
        self._refetches[key] = task
        task.add_done_callback(
            lambda t, key=key: self._refetches.pop(key, None) if self._refetches.get(key) is t else None
        )

    async def _refetch(self, key: CacheKey) -> None:
        try:
            while self.registry.is_watched(key):
                generation = self.cache.generation(key)
                await self._fetch(key, background=True)
                if self.cache.generation(key) == generation:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # 무효화 상태 유지 - 다음 read()가 다시 조회
            logger.warning(f"재조회 실패 {channel_name(key)}: {e}")

    async def wait_idle(self) -> None:
        """예약된 재조회가 모두 끝날 때까지 대기"""
        while self._refetches:
            await asyncio.gather(*list(self._refetches.values()), return_exceptions=True)

    # ==================== 낙관적 값 ====================

    def put_optimistic(self, resource: ResourceType, scope_id: Any, value: Any) -> Any:
        return self.cache.put_optimistic(cache_key(resource, scope_id), value)

    def discard_optimistic(self, resource: ResourceType, scope_id: Any) -> bool:
        return self.cache.discard_optimistic(cache_key(resource, scope_id))

    # ==================== 구독 ====================

    def scope(self, name: Optional[str] = None) -> SyncScope:
        self._scope_counter += 1
        name = name or f"scope-{self._scope_counter}"
        return SyncScope(self, name, owner=f"{name}#{self._scope_counter}")

    async def subscribe(self, key: CacheKey, owner: str) -> None:
        await self.registry.acquire(
            key,
            owner,
            lambda event, key=key: self._on_change(key, event),
        )

    async def unsubscribe(self, key: CacheKey, owner: str) -> None:
        closed = await self.registry.release(key, owner)
        if not closed:
            return
        pending = self._refetches.pop(key, None)
        if pending is not None and not pending.done():
            pending.cancel()
        # 기다리는 호출자가 없는 조회는 캐시에 쓰기 전에 중단
        inflight = self._inflight.get(key)
        if inflight is not None and not inflight[0].done() and not self._waiters.get(key):
            inflight[0].cancel()
            self._inflight.pop(key, None)

    async def close(self) -> None:
        """모든 구독 해제 및 백그라운드 작업 취소"""
        tasks = list(self._refetches.values()) + [task for task, _ in self._inflight.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refetches.clear()
        self._inflight.clear()
        await self.registry.close_all()
        logger.info("🛑 Realtime synchronizer closed")
