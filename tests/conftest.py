"""
Pytest configuration and fixtures for membership sync tests
"""

import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))
sys.path.insert(0, str(Path(__file__).parent.parent))

from membership.config import sync_config
from membership.context import ClubRole, SessionContext
from membership.events import LocalChangeStream
from membership.ledger import CreditLedgerClient
from membership.reconciler import AttendanceReconciler
from membership.realtime import RealtimeSynchronizer
from membership.cache import ProjectionCache

from fakes import FakeRemote, make_membership


class FakeClock:
    """수동으로 진행하는 monotonic 시계"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """재시도 대기 시간 제거"""
    monkeypatch.setattr(sync_config, "conflict_retry_delay", 0.0)
    monkeypatch.setattr(sync_config, "network_retry_delay", 0.0)


@pytest.fixture
def stream():
    return LocalChangeStream()


@pytest.fixture
def remote(stream):
    """선수 p1~p3 (잔여 10회) 가 등록된 원격 서비스"""
    fake = FakeRemote(stream=stream)
    for player_id in ("p1", "p2", "p3"):
        fake.add_membership(make_membership(player_id, allocated=10))
    return fake


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ProjectionCache(ttl_seconds=300, clock=clock)


@pytest.fixture
def ledger(remote):
    return CreditLedgerClient(remote, write_timeout=1.0)


@pytest.fixture
def synchronizer(remote, stream, cache):
    from membership.service import build_loaders
    return RealtimeSynchronizer(stream, build_loaders(remote), cache)


@pytest.fixture
def reconciler(remote, ledger, synchronizer):
    return AttendanceReconciler(remote, ledger, synchronizer)


@pytest.fixture
def coach():
    return SessionContext(user_id="coach-1", role=ClubRole.coach, full_name="김코치")


@pytest.fixture
def owner():
    return SessionContext(user_id="owner-1", role=ClubRole.owner, full_name="박대표")


@pytest.fixture
def student():
    return SessionContext(user_id="student-1", role=ClubRole.student, player_id="p1")


@pytest.fixture
def notifications():
    """notify 호출 기록"""
    return []


@pytest.fixture
def notifier(notifications):
    def _notify(message, severity):
        notifications.append((message, severity))
    return _notify
