"""
Host Monitoring Scheduler

Runs the engine's host security check on a fixed interval while background
monitoring is enabled.

Schedule:
- Every `monitoring_interval_minutes` (default 5)
- Can be triggered manually via API endpoint
"""

import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from aiedr.services.base import EngineSettings
from aiedr.services.threat_types import HostSecurityReport, ThreatLevel

logger = logging.getLogger(__name__)

JOB_ID = "host_security_check"


class HostMonitoringScheduler:
    """
    Scheduler for periodic host security checks.

    start() and stop() are idempotent. A fresh AsyncIOScheduler is created
    on every start so the monitor can be restarted after a settings change.
    """

    def __init__(self, engine, interval_minutes: int = 5):
        self.engine = engine
        self.interval_minutes = interval_minutes
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False
        self.last_run_level: Optional[ThreatLevel] = None
        self.run_count = 0

    async def _run_check_job(self) -> Optional[HostSecurityReport]:
        """Execute one host check (called by scheduler)."""
        try:
            report = await self.engine.check_host()
        except Exception as e:
            logger.error(f"❌ Scheduled host security check failed: {e}", exc_info=True)
            return None

        self.run_count += 1
        self.last_run_level = report.overall_threat_level
        if report.overall_threat_level >= ThreatLevel.HIGH:
            logger.warning(
                f"⚠️ Host security check: {report.overall_threat_level.value}",
                extra={"threat_level": report.overall_threat_level.value},
            )
        else:
            logger.info(f"✅ Host security check: {report.overall_threat_level.value}")
        return report

    def start(self):
        """Start the scheduler."""
        if self.is_running:
            logger.warning("Host monitoring is already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._run_check_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            name="Host Security Check",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self.is_running = True

        logger.info(f"✅ Host monitoring started - checking every {self.interval_minutes} minute(s)")

    def stop(self):
        """Stop the scheduler."""
        if not self.is_running:
            return

        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        self.is_running = False

        logger.info("Host monitoring stopped")

    def apply_settings(self, settings: EngineSettings):
        """Start, stop or reschedule to match new settings."""
        interval_changed = settings.monitoring_interval_minutes != self.interval_minutes
        self.interval_minutes = settings.monitoring_interval_minutes

        if not settings.background_monitoring_enabled:
            self.stop()
        elif not self.is_running:
            self.start()
        elif interval_changed:
            self.stop()
            self.start()

    async def run_now(self) -> Optional[HostSecurityReport]:
        """Manually trigger a check."""
        logger.info("Manual host security check triggered")
        return await self._run_check_job()

    def get_next_run_time(self) -> str:
        """Get the next scheduled run time."""
        job = self.scheduler.get_job(JOB_ID) if self.scheduler else None
        if job and job.next_run_time:
            return job.next_run_time.isoformat()
        return "Not scheduled"

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "interval_minutes": self.interval_minutes,
            "next_run_time": self.get_next_run_time(),
            "run_count": self.run_count,
            "last_run_level": self.last_run_level.value if self.last_run_level else None,
        }
