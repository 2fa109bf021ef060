import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from metrocast.core.config import Settings
from metrocast.core.metrics import observe_feed_cycle
from metrocast.core.telemetry import feed_cycle_span, get_tracer
from metrocast.services.gtfs_realtime import GTFSRealtimeClient
from metrocast.services.live_reconciler import LiveReconciler
from metrocast.services.prediction_store import PredictionStore
from metrocast.services.static_data_events import StaticDataNotifier
from metrocast.services.static_loader import StaticScheduleLoader

logger = logging.getLogger(__name__)


class FeedScheduler:
    """Runs the static and live feed pipelines on fixed intervals.

    Every job runs with ``max_instances=1`` so a slow cycle is never overlapped
    by the next tick of the same job. A failed cycle is logged and simply
    retried on the next tick.
    """

    def __init__(
        self,
        settings: Settings,
        store: PredictionStore,
        *,
        realtime_client: GTFSRealtimeClient | None = None,
        static_loader: StaticScheduleLoader | None = None,
        notifier: StaticDataNotifier | None = None,
    ):
        self.settings = settings
        self.store = store
        self.realtime_client = realtime_client or GTFSRealtimeClient(settings)
        self.notifier = notifier or StaticDataNotifier(settings)
        self.static_loader = static_loader or StaticScheduleLoader(
            store, settings, notifier=self.notifier
        )
        self.live = LiveReconciler(store, self.realtime_client, settings)
        self.scheduler = AsyncIOScheduler()
        self._tracer = get_tracer()
        self._setup_jobs()

    def _setup_jobs(self):
        """Setup scheduled jobs."""
        jobs = (
            (
                self._load_vehicle_positions,
                self.settings.vehicle_positions_interval_seconds,
                "vehicle_positions",
                "Load vehicle positions",
            ),
            (
                self._load_trip_updates,
                self.settings.trip_updates_interval_seconds,
                "trip_updates",
                "Load trip updates",
            ),
            (
                self._load_alerts,
                self.settings.alerts_interval_seconds,
                "service_alerts",
                "Load service alerts",
            ),
            (
                self._load_static_schedule,
                self.settings.static_schedule_interval_seconds,
                "static_schedule",
                "Load static schedule",
            ),
            (
                self._cleanup_stop_times,
                self.settings.retention_cleanup_interval_seconds,
                "retention_cleanup",
                "Remove expired stop times",
            ),
        )
        for func, interval, job_id, name in jobs:
            self.scheduler.add_job(
                func=func,
                trigger=IntervalTrigger(seconds=interval),
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

    async def start(self):
        """Load the schedule once, then start the periodic jobs."""
        logger.info("Starting feed scheduler")
        # Live updates are dropped for keys without a scheduled instance, so
        # the schedule has to be in place before the live feeds are polled.
        await self._load_static_schedule()
        # Alerts change rarely, load them now rather than an interval from now.
        await self._load_alerts()
        self.scheduler.start()

    async def stop(self):
        """Stop the scheduler."""
        logger.info("Stopping feed scheduler")
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.realtime_client.aclose()

    async def _run_cycle(self, job: str, cycle: Callable[[], Awaitable[Any]]) -> Any:
        start = time.perf_counter()
        try:
            with feed_cycle_span(job, self._tracer):
                result = await cycle()
        except Exception as exc:
            observe_feed_cycle(job, "error", time.perf_counter() - start)
            logger.error("Feed job %s failed: %s", job, exc, exc_info=True)
            return None
        observe_feed_cycle(job, "success", time.perf_counter() - start)
        return result

    async def _load_vehicle_positions(self):
        return await self._run_cycle("vehicle_positions", self.live.load_vehicle_positions)

    async def _load_trip_updates(self):
        return await self._run_cycle("trip_updates", self.live.load_trip_updates)

    async def _load_alerts(self):
        return await self._run_cycle("service_alerts", self.live.load_alerts)

    async def _load_static_schedule(self):
        return await self._run_cycle("static_schedule", self.static_loader.load)

    async def _cleanup_stop_times(self):
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.settings.retention_days)
        return await self._run_cycle(
            "retention_cleanup",
            lambda: self.store.cleanup_stop_time_instances(cutoff),
        )

    def get_job_info(self) -> dict:
        """Get information about scheduled jobs."""
        jobs = []
        for job in self.scheduler.get_jobs():
            # Jobs added before start() have no next run time yet.
            next_run = getattr(job, "next_run_time", None)
            jobs.append(
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": next_run.isoformat() if next_run else None,
                    "trigger": str(job.trigger),
                }
            )

        return {
            "scheduler_running": self.scheduler.running,
            "jobs": jobs,
        }
