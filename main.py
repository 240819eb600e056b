"""
멤버십/출석 동기화 CLI
"""
import asyncio
import json
import sys
from typing import Optional
from loguru import logger

from membership.cache import ResourceType
from membership.context import SessionContext
from membership.errors import MembershipSyncError
from membership.maintenance import MembershipMaintenance
from membership.service import MembershipService
from scheduler.scheduler import MaintenanceScheduler


# 로깅 설정
logger.remove()
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level="INFO"
)
logger.add(
    "logs/membership_{time:YYYY-MM-DD}.log",
    rotation="1 day",
    retention="30 days",
    level="DEBUG"
)


class MembershipRunner:
    """CLI 실행기"""

    def __init__(self):
        self.service: Optional[MembershipService] = None

    async def initialize(self):
        """초기화"""
        try:
            self.service = await MembershipService.connect(SessionContext.system())
            logger.info("멤버십 서비스 초기화 완료")
        except Exception as e:
            logger.error(f"초기화 오류: {e}")
            raise

    async def close(self):
        if self.service:
            await self.service.close()

    async def show_snapshot(self, player_id: str):
        """선수 멤버십 요약 출력"""
        snapshot = await self.service.snapshot(player_id)
        if snapshot is None:
            print(f"\n활성 멤버십 없음: {player_id}")
            return
        print("\n=== 멤버십 요약 ===")
        for name, value in snapshot.model_dump(mode="json").items():
            print(f"  {name}: {value}")

    async def verify(self, player_id: str) -> bool:
        return await self.service.verify_snapshot(player_id)

    async def watch(self, player_id: str):
        """멤버십 변경 감시 (Ctrl+C로 종료)"""
        async with await self.service.watch_player(player_id) as scope:
            logger.info(f"감시 중: {player_id} (Ctrl+C로 종료)")
            last = None
            while True:
                snapshot = await scope.read(ResourceType.MEMBERSHIP, player_id)
                if snapshot != last:
                    remaining = snapshot.remaining_classes if snapshot else None
                    logger.info(f"📊 {player_id} 잔여 수업: {remaining}")
                    last = snapshot
                await asyncio.sleep(5)

    async def run_maintenance(self):
        maintenance = MembershipMaintenance(self.service.gateway)
        return await maintenance.run()


async def main():
    """메인 함수"""
    import argparse

    parser = argparse.ArgumentParser(description="멤버십/출석 동기화")
    parser.add_argument(
        "--mode",
        choices=["snapshot", "verify", "watch", "maintenance", "scheduler"],
        default="snapshot",
        help="실행 모드"
    )
    parser.add_argument(
        "--player",
        help="선수 ID (snapshot/verify/watch)"
    )

    args = parser.parse_args()

    if args.mode in ("snapshot", "verify", "watch") and not args.player:
        parser.error(f"--mode {args.mode} 에는 --player 가 필요합니다")

    runner = MembershipRunner()

    try:
        await runner.initialize()

        if args.mode == "snapshot":
            await runner.show_snapshot(args.player)

        elif args.mode == "verify":
            if not await runner.verify(args.player):
                sys.exit(1)

        elif args.mode == "watch":
            await runner.watch(args.player)

        elif args.mode == "maintenance":
            report = await runner.run_maintenance()
            print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
            if not report.success:
                sys.exit(1)

        elif args.mode == "scheduler":
            # 스케줄러 모드
            scheduler = MaintenanceScheduler(
                maintenance_func=runner.run_maintenance,
                cache_purge_func=runner.service.synchronizer.cache.purge_expired,
            )
            scheduler.start()

            logger.info("스케줄러 모드로 실행 중... (Ctrl+C로 종료)")

            try:
                # 무한 대기
                while True:
                    await asyncio.sleep(60)
                    status = scheduler.get_status()
                    logger.debug(f"스케줄러 상태: {status}")
            except (KeyboardInterrupt, asyncio.CancelledError):
                scheduler.stop()
                logger.info("스케줄러 종료됨")

    except MembershipSyncError as e:
        logger.error(f"❌ {e.kind}: {e.message}")
        sys.exit(1)
    finally:
        await runner.close()


if __name__ == "__main__":
    asyncio.run(main())
