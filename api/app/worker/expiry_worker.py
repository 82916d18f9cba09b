"""
Expiry Worker

Denies pending join requests that the host has not answered within
`request_ttl_hours`. Expiry uses the same compare-and-swap as a host
decision, so a host approving at the same moment either wins outright or
gets a Conflict.

Runs inside the API process (started from the app lifespan) so that the
resulting events reach that process's realtime subscribers. Uses APScheduler
for job scheduling.
"""
import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings
from app.services.join_request_service import JoinRequestService

logger = logging.getLogger('expiry_worker')


class ExpiryWorker:
    """Background worker for join request expiry."""

    def __init__(self, service: JoinRequestService, interval_minutes: int | None = None):
        self.service = service
        self.interval_minutes = interval_minutes or settings.expiry_interval_minutes
        self.scheduler = AsyncIOScheduler()

    def start(self):
        """Schedule the expiry job and start the scheduler."""
        logger.info('Starting Expiry Worker...')
        self.scheduler.add_job(
            self._run_expiry,
            IntervalTrigger(minutes=self.interval_minutes),
            id='expire_join_requests',
            name='Expire Stale Join Requests',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info(f'  - {job.name}: next run at {job.next_run_time}')

    def shutdown(self):
        if self.scheduler.running:
            logger.info('Shutting down...')
            self.scheduler.shutdown(wait=False)

    async def _run_expiry(self) -> int:
        """Expire stale requests once."""
        logger.info('Running join request expiry...')
        try:
            expired = await self.service.expire_stale_requests()
        except Exception as e:
            logger.error(f'Join request expiry failed: {e}', exc_info=True)
            raise
        logger.info(f'Expired {expired} join request(s)')
        return expired

    async def run_once(self) -> int:
        """Run the job immediately (for testing)."""
        return await self._run_expiry()


async def main():
    """Standalone entry point. Events only reach subscribers in this process."""
    from app.deps import get_join_request_service
    from app.main import configure_logging

    configure_logging()
    worker = ExpiryWorker(get_join_request_service())
    worker.start()
    try:
        while True:
            await asyncio.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        worker.shutdown()


if __name__ == '__main__':
    asyncio.run(main())
