"""
멤버십/출석 일관성 패키지

- Credit Ledger Client: 멱등 크레딧 변경 (ledger)
- Attendance Reconciler: 출석 상태 전이 → 원장 변경 (reconciler)
- Realtime Cache Synchronizer: 변경 스트림 기반 캐시 무효화 (realtime, cache)
- Membership Snapshot Projector: 원장 → 표시용 요약 (projector)

서비스 진입점은 membership.service.MembershipService
"""

from .schemas import (
    AttendanceStatus,
    MembershipStatus,
    AllocationType,
    LedgerReason,
    Membership,
    LedgerEntry,
    AttendanceRecord,
    MembershipSnapshot,
    AttendanceMark,
    AttendanceResult,
    BatchResult,
)
from .errors import (
    MembershipSyncError,
    ValidationError,
    InsufficientCredit,
    Conflict,
    RetryExhausted,
    NotFound,
    NetworkError,
    LedgerTimeout,
    PermissionDenied,
    PartialBatchFailure,
)
from .projector import project, net_attendance_charge
from .ledger import CreditLedgerClient, make_idempotency_key
from .reconciler import AttendanceReconciler, transition_delta
from .cache import ProjectionCache, ResourceType
from .realtime import RealtimeSynchronizer, SyncScope, SubscriptionRegistry
from .events import ChangeEvent, ChangeOperation, LocalChangeStream
from .context import ClubRole, SessionContext
from .alerts import evaluate_alerts, MembershipAlert
from .maintenance import MembershipMaintenance, MaintenanceReport

__all__ = [
    # Schemas
    "AttendanceStatus",
    "MembershipStatus",
    "AllocationType",
    "LedgerReason",
    "Membership",
    "LedgerEntry",
    "AttendanceRecord",
    "MembershipSnapshot",
    "AttendanceMark",
    "AttendanceResult",
    "BatchResult",
    # Errors
    "MembershipSyncError",
    "ValidationError",
    "InsufficientCredit",
    "Conflict",
    "RetryExhausted",
    "NotFound",
    "NetworkError",
    "LedgerTimeout",
    "PermissionDenied",
    "PartialBatchFailure",
    # Ledger
    "project",
    "net_attendance_charge",
    "CreditLedgerClient",
    "make_idempotency_key",
    "AttendanceReconciler",
    "transition_delta",
    # Realtime
    "ProjectionCache",
    "ResourceType",
    "RealtimeSynchronizer",
    "SyncScope",
    "SubscriptionRegistry",
    "ChangeEvent",
    "ChangeOperation",
    "LocalChangeStream",
    # Context
    "ClubRole",
    "SessionContext",
    # Maintenance
    "evaluate_alerts",
    "MembershipAlert",
    "MembershipMaintenance",
    "MaintenanceReport",
]
