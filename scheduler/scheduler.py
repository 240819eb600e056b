"""
멤버십 유지보수 스케줄러
"""
from typing import Optional, Callable, Awaitable, Any
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from membership.config import maintenance_config, sync_config


class MaintenanceScheduler:
    """멤버십 유지보수 스케줄러"""

    def __init__(
        self,
        maintenance_func: Callable[[], Awaitable[Any]],
        cache_purge_func: Optional[Callable[[], Any]] = None,
    ):
        """
        Args:
            maintenance_func: 유지보수 실행 함수 (async)
            cache_purge_func: 만료 캐시 정리 함수 (optional)
        """
        self.scheduler = AsyncIOScheduler()
        self.maintenance_func = maintenance_func
        self.cache_purge_func = cache_purge_func
        self._is_running = False
        self._last_run: Optional[datetime] = None
        self._last_result: Any = None

    def setup(self):
        """스케줄러 설정"""
        if maintenance_config.maintenance_enabled:
            self.scheduler.add_job(
                self._run_maintenance,
                CronTrigger(hour=maintenance_config.maintenance_hour, minute=0),
                id="daily_membership_maintenance",
                name="Daily Membership Maintenance",
                replace_existing=True
            )
            logger.info(f"매일 {maintenance_config.maintenance_hour}시 멤버십 유지보수 스케줄 등록")
        else:
            logger.info("멤버십 유지보수 비활성화됨")

        if self.cache_purge_func:
            self.scheduler.add_job(
                self._run_cache_purge,
                IntervalTrigger(seconds=sync_config.cache_ttl_seconds),
                id="cache_purge",
                name="Expired Cache Purge",
                replace_existing=True
            )
            logger.info(f"만료 캐시 정리 스케줄 등록 ({sync_config.cache_ttl_seconds:.0f}초 간격)")

    async def _run_maintenance(self):
        """유지보수 실행"""
        if self._is_running:
            logger.warning("이미 유지보수가 진행 중입니다")
            return

        self._is_running = True
        logger.info("=== 멤버십 유지보수 시작 ===")

        try:
            self._last_result = await self.maintenance_func()
            self._last_run = datetime.now()
            logger.info(f"멤버십 유지보수 완료: {self._last_run}")
        except Exception as e:
            logger.error(f"멤버십 유지보수 오류: {e}")
        finally:
            self._is_running = False

    def _run_cache_purge(self):
        removed = self.cache_purge_func()
        if removed:
            logger.debug(f"만료 캐시 {removed}건 정리")

    def start(self):
        """스케줄러 시작"""
        self.setup()
        self.scheduler.start()
        logger.info("스케줄러 시작됨")

    def stop(self):
        """스케줄러 중지"""
        self.scheduler.shutdown()
        logger.info("스케줄러 중지됨")

    def get_status(self) -> dict:
        """스케줄러 상태 조회"""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None
            })

        last_result = self._last_result.to_dict() if hasattr(self._last_result, "to_dict") else None
        return {
            "is_running": self._is_running,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "last_result": last_result,
            "jobs": jobs
        }

    async def run_now(self):
        """즉시 실행"""
        await self._run_maintenance()
