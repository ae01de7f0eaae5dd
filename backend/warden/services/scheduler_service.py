"""
Scheduler Service for the daily login health check.

This module provides the SchedulerService class that handles:
- Initializing and managing APScheduler
- Registering the cron job that checks every stored login
- Running the batch health check with its own DB session
"""

import logging
from typing import List
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from warden.browser.driver import BrowserDriver
from warden.config import get_settings
from warden.database import get_session_factory
from warden.services.login_health import LoginHealthChecker
from warden.services.login_health import LoginHealthResult

logger = logging.getLogger(__name__)

HEALTH_CHECK_JOB_ID = "login_health_check"


class SchedulerService:
    """Service for the scheduled login health check."""

    def __init__(
        self,
        driver: BrowserDriver,
        *,
        session_factory=None,
        cron_expression: Optional[str] = None,
        checker: Optional[LoginHealthChecker] = None,
    ):
        """Initialize the scheduler service."""
        self.scheduler = AsyncIOScheduler()
        self._initialized = False
        self.session_factory = session_factory or get_session_factory()
        self.cron_expression = get_settings().health_check_cron if cron_expression is None else cron_expression
        self.checker = checker or LoginHealthChecker(driver)

    async def start(self):
        """Start the scheduler if not already running."""
        if not self._initialized:
            self.schedule_health_check(self.cron_expression)
            self.scheduler.start()
            self._initialized = True
            logger.info("Scheduler service started")

    async def stop(self):
        """Shutdown the scheduler gracefully."""
        if self._initialized:
            self.scheduler.shutdown(wait=False)
            self._initialized = False
            logger.info("Scheduler service stopped")

    def schedule_health_check(self, cron_expression: Optional[str]) -> bool:
        """Register (or replace) the daily job.  An empty expression disables it."""

        self.remove_health_check()
        if not cron_expression:
            logger.info("Login health check schedule disabled")
            return False

        try:
            self.scheduler.add_job(
                self.run_health_check,
                CronTrigger.from_crontab(cron_expression),
                id=HEALTH_CHECK_JOB_ID,
                replace_existing=True,
            )
        except ValueError as e:
            logger.error(f"Invalid health check schedule {cron_expression!r}: {e}")
            return False

        logger.info(f"Scheduled login health check: {cron_expression}")
        return True

    def remove_health_check(self):
        if self.scheduler.get_job(HEALTH_CHECK_JOB_ID):
            self.scheduler.remove_job(HEALTH_CHECK_JOB_ID)
            logger.info("Removed login health check schedule")

    async def run_health_check(self) -> List[LoginHealthResult]:
        """
        Check every stored login once.

        This is the function that gets called by the scheduler when the job
        triggers; ``POST /api/logins/health`` runs the same batch on demand.
        """
        logger.info("Starting daily login health check")

        db_session = self.session_factory()
        try:
            results = await self.checker.check_all_logins(db_session)
        except Exception as e:
            logger.error(f"Daily login health check failed: {e}")
            return []
        finally:
            db_session.close()

        healthy = sum(1 for result in results if result.success)
        logger.info(f"Daily login health check completed: {healthy}/{len(results)} logins healthy")
        return results
