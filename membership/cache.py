"""
파생 데이터 캐시

(리소스 유형, 범위 ID) 키로 원격 서비스에서 읽은 값을 TTL 동안 보관한다.
- 저장되는 값은 동결(frozen) - 호출자가 변경할 수 없음
- 낙관적(optimistic) 값은 별도 계층으로 보관, 권위 값이 들어오면 폐기
- 무효화마다 키의 세대(generation)가 증가해 진행 중이던 조회 결과를 버릴 수 있음
"""

import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .config import sync_config


class ResourceType(str, Enum):
    """캐시/구독 리소스 유형"""
    MEMBERSHIP = "membership"     # 범위: player_id
    ATTENDANCE = "attendance"     # 범위: event_id
    GRADES = "grades"             # 범위: event_id


CacheKey = Tuple[ResourceType, str]

MISSING = object()


def cache_key(resource: ResourceType, scope_id: Any) -> CacheKey:
    return (ResourceType(resource), str(scope_id))


def freeze(value: Any) -> Any:
    """중첩 컨테이너를 읽기 전용으로 변환"""
    if isinstance(value, BaseModel):
        # 스키마 모델은 frozen=True
        return value
    if isinstance(value, (MappingProxyType, frozenset)):
        return value
    if isinstance(value, dict):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, set):
        return frozenset(freeze(v) for v in value)
    return value


@dataclass
class _Entry:
    expires_at: float
    value: Any


class ProjectionCache:
    """TTL 캐시 + 낙관적 계층"""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = sync_config.cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._items: Dict[CacheKey, _Entry] = {}
        self._optimistic: Dict[CacheKey, Any] = {}
        self._generations: Dict[CacheKey, int] = {}

    def lookup(self, key: CacheKey) -> Any:
        """권위 값 조회 - 없거나 만료되면 MISSING"""
        entry = self._items.get(key)
        if entry is None:
            return MISSING
        if entry.expires_at <= self._clock():
            self._items.pop(key, None)
            return MISSING
        return entry.value

    def get(self, key: CacheKey, default: Any = None) -> Any:
        value = self.lookup(key)
        return default if value is MISSING else value

    def peek(self, key: CacheKey, default: Any = None) -> Any:
        """표시용 조회 - 낙관적 값 우선"""
        if key in self._optimistic:
            return self._optimistic[key]
        return self.get(key, default)

    def set(self, key: CacheKey, value: Any) -> Any:
        """권위 값 저장 - 해당 키의 낙관적 값은 폐기"""
        frozen = freeze(value)
        self._items[key] = _Entry(expires_at=self._clock() + self.ttl_seconds, value=frozen)
        self._optimistic.pop(key, None)
        return frozen

    def put_optimistic(self, key: CacheKey, value: Any) -> Any:
        frozen = freeze(value)
        self._optimistic[key] = frozen
        return frozen

    def discard_optimistic(self, key: CacheKey) -> bool:
        return self._optimistic.pop(key, MISSING) is not MISSING

    def has_optimistic(self, key: CacheKey) -> bool:
        return key in self._optimistic

    def invalidate(self, key: CacheKey) -> int:
        """권위 값 제거 + 세대 증가. 새 세대 번호 반환"""
        self._items.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1
        return self._generations[key]

    def generation(self, key: CacheKey) -> int:
        return self._generations.get(key, 0)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._items.items() if e.expires_at <= now]
        for k in expired:
            self._items.pop(k, None)
        return len(expired)

    def clear(self) -> None:
        self._items.clear()
        self._optimistic.clear()

    def keys(self) -> List[CacheKey]:
        return list(self._items.keys())

    def __contains__(self, key: CacheKey) -> bool:
        return self.lookup(key) is not MISSING

    def __len__(self) -> int:
        return len(self._items)
