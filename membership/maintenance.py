"""
멤버십 유지보수 작업

1. 만료/소진 멤버십 자동 비활성화 (원격 함수)
2. 사용량 뷰에서 잔여량/만료 알림 계산
3. 이미 보낸 알림은 건너뛰고 새 알림만 발송 후 기록
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from datetime import datetime
from dataclasses import dataclass, field

from loguru import logger

from .alerts import MembershipAlert, evaluate_alerts
from .errors import MembershipSyncError


AlertSink = Callable[[MembershipAlert], Union[Awaitable[None], None]]


def log_alert_sink(alert: MembershipAlert) -> None:
    logger.info(f"📨 [{alert.severity.value}] {alert.player_id} {alert.title}: {alert.message}")


@dataclass
class MaintenanceReport:
    """유지보수 실행 결과"""
    success: bool = True
    timestamp: datetime = field(default_factory=datetime.now)
    deactivated_players: int = 0
    memberships_processed: int = 0
    alerts_sent: int = 0
    notifications: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
            "deactivated_players": self.deactivated_players,
            "memberships_processed": self.memberships_processed,
            "alerts_sent": self.alerts_sent,
            "notifications": self.notifications,
            "errors": self.errors,
        }


class MembershipMaintenance:
    """일일 멤버십 유지보수"""

    def __init__(self, gateway, sink: Optional[AlertSink] = None):
        self.gateway = gateway
        self.sink = sink or log_alert_sink

    async def run(self) -> MaintenanceReport:
        logger.info("🔧 멤버십 유지보수 시작")
        report = MaintenanceReport()

        # 비활성화 실패는 알림 처리를 막지 않음
        try:
            report.deactivated_players = await self.gateway.auto_deactivate_players()
            logger.info(f"비활성화된 선수: {report.deactivated_players}명")
        except MembershipSyncError as e:
            logger.error(f"자동 비활성화 실패: {e.message}")
            report.errors.append(f"auto_deactivate: {e.message}")

        usage = await self.gateway.fetch_membership_usage()
        report.memberships_processed = len(usage)

        for snapshot in usage:
            alerts = evaluate_alerts(snapshot)
            if not alerts:
                continue

            sent_codes = await self.gateway.fetch_sent_alert_codes(snapshot.membership_id)
            for alert in alerts:
                if alert.code in sent_codes:
                    continue
                try:
                    result = self.sink(alert)
                    if asyncio.iscoroutine(result):
                        await result
                    await self.gateway.mark_alert_sent(alert.membership_id, alert.code)
                except MembershipSyncError as e:
                    logger.error(f"알림 기록 실패 ({alert.player_id}, {alert.code}): {e.message}")
                    report.errors.append(f"{alert.code}:{alert.player_id}: {e.message}")
                    continue

                report.alerts_sent += 1
                report.notifications.append(alert.to_dict())

        report.success = not report.errors
        logger.info(
            f"✅ 멤버십 유지보수 완료: 비활성화 {report.deactivated_players}명, "
            f"알림 {report.alerts_sent}건"
        )
        return report
