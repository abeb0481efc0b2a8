"""Interval and cron schedulers for recurring async tasks.

Both schedulers run a driver task that fires the job on its cadence. Each
firing is its own asyncio.Task, tracked in a join set, so a slow run never
delays the next fire time. stop() halts the driver, cancels outstanding
firings and waits for them to finish.

Schedule strings:
- Intervals: "30m", "1h30m", "45s", "500ms", or "@every 30m"
- Cron: five fields ("0 * * * *") or a descriptor (@hourly, @daily, ...)
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime

from croniter import croniter

from .metrics import scheduler_runs_total

logger = logging.getLogger("reviewsync.scheduler")

__all__ = [
    "CRON_DESCRIPTORS",
    "EVERY_PREFIX",
    "CronScheduler",
    "IntervalScheduler",
    "Task",
    "build_scheduler",
    "is_cron_spec",
    "parse_interval",
    "validate_schedule",
]

Task = Callable[[], Awaitable[object]]

CRON_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# "@every <duration>" is an interval, not a cron descriptor
EVERY_PREFIX = "@every"

_INTERVAL_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_interval(text: str) -> float:
    """Parse a duration like "1h30m" (or "@every 1h30m") into seconds.

    Raises:
        ValueError: Empty, malformed or non-positive duration
    """
    spec = (text or "").strip().lower()
    if spec.split(None, 1)[:1] == [EVERY_PREFIX]:
        spec = spec[len(EVERY_PREFIX) :].strip()
    if not spec:
        raise ValueError("empty interval")
    pos = 0
    total = 0.0
    for match in _INTERVAL_PART.finditer(spec):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(spec):
        raise ValueError(f"invalid interval {text!r}: expected e.g. '30m' or '1h30m'")
    if total <= 0:
        raise ValueError(f"interval must be positive, got {text!r}")
    return total


def is_cron_spec(text: str) -> bool:
    """Cron expressions contain fields separated by spaces, or are @descriptors.

    "@every <duration>" is an interval spec.
    """
    spec = (text or "").strip()
    if spec.lower().split(None, 1)[:1] == [EVERY_PREFIX]:
        return False
    return spec.startswith("@") or " " in spec


def _normalize_cron(expression: str) -> str:
    spec = (expression or "").strip()
    if spec.startswith("@"):
        if spec.lower() not in CRON_DESCRIPTORS:
            raise ValueError(f"unknown cron descriptor {expression!r}")
        return CRON_DESCRIPTORS[spec.lower()]
    if len(spec.split()) != 5:
        raise ValueError(f"cron expression must have 5 fields, got {expression!r}")
    if not croniter.is_valid(spec):
        raise ValueError(f"invalid cron expression {expression!r}")
    return spec


def validate_schedule(spec: str) -> None:
    """Raise ValueError if spec is neither a valid interval nor cron expression."""
    if is_cron_spec(spec):
        _normalize_cron(spec)
    else:
        parse_interval(spec)


class _Scheduler:
    kind = "scheduler"

    def __init__(self, task: Task, enabled: bool = True, name: str | None = None):
        self._task = task
        self.enabled = enabled
        self.name = name or getattr(task, "__name__", self.kind)
        self._lock = asyncio.Lock()
        self._running = False
        self._stop_event = asyncio.Event()
        self._driver: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        """Firings that have not finished yet."""
        return len(self._in_flight)

    async def start(self) -> None:
        """Begin firing. No-op when disabled or already running."""
        if not self.enabled:
            logger.info("scheduler_disabled", extra={"scheduler": self.name})
            return
        async with self._lock:
            if self._running:
                logger.warning("scheduler_already_running", extra={"scheduler": self.name})
                return
            self._before_start()
            self._running = True
            self._stop_event = asyncio.Event()
            self._driver = asyncio.create_task(self._drive(), name=f"{self.name}-driver")
        logger.info("scheduler_started", extra={"scheduler": self.name, "kind": self.kind})

    async def stop(self) -> None:
        """Stop firing, cancel outstanding runs and wait for them to drain."""
        async with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()

            if self._driver is not None:
                self._driver.cancel()
                await asyncio.gather(self._driver, return_exceptions=True)
                self._driver = None

            pending = list(self._in_flight)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info(
            "scheduler_stopped",
            extra={"scheduler": self.name, "cancelled_runs": len(pending)},
        )

    def _before_start(self) -> None:
        pass

    async def _drive(self) -> None:
        raise NotImplementedError

    async def _sleep(self, delay: float) -> bool:
        """Sleep up to delay seconds; True if stop() was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(delay, 0.0))
            return True
        except asyncio.TimeoutError:
            return False

    def _fire(self) -> None:
        task = asyncio.create_task(self._run_task(), name=f"{self.name}-run")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_task(self) -> None:
        try:
            await self._task()
        except asyncio.CancelledError:
            scheduler_runs_total.labels(scheduler=self.name, outcome="cancelled").inc()
            logger.info("scheduled_task_cancelled", extra={"scheduler": self.name})
            raise
        except Exception as e:
            scheduler_runs_total.labels(scheduler=self.name, outcome="failed").inc()
            logger.error(
                "scheduled_task_failed",
                extra={
                    "scheduler": self.name,
                    "exception_type": type(e).__name__,
                    "error": str(e),
                },
            )
        else:
            scheduler_runs_total.labels(scheduler=self.name, outcome="success").inc()


class IntervalScheduler(_Scheduler):
    """Fires immediately, then every `interval` seconds.

    Example:
        >>> scheduler = IntervalScheduler(parse_interval("30m"), service.run_once)
        >>> await scheduler.start()
    """

    kind = "interval"

    def __init__(self, interval: float, task: Task, enabled: bool = True, name: str | None = None):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        super().__init__(task, enabled, name)
        self.interval = interval

    async def _drive(self) -> None:
        while self._running:
            self._fire()
            if await self._sleep(self.interval):
                return


class CronScheduler(_Scheduler):
    """Fires at each match of a cron expression, in local time.

    Raises:
        ValueError: At construction, for an invalid expression
    """

    kind = "cron"

    def __init__(self, expression: str, task: Task, enabled: bool = True, name: str | None = None):
        self.cron_expression = _normalize_cron(expression)
        super().__init__(task, enabled, name)
        self.expression = expression

    def next_fire_time(self, after: datetime | None = None) -> datetime:
        """First fire time strictly after `after` (default: now)."""
        base = after or datetime.now().astimezone()
        return croniter(self.cron_expression, base).get_next(datetime)

    def _before_start(self) -> None:
        now = datetime.now().astimezone()
        next_run = self.next_fire_time(now)
        logger.info(
            "cron_next_run",
            extra={
                "scheduler": self.name,
                "expression": self.expression,
                "next_run": next_run.isoformat(),
                "delay_seconds": round((next_run - now).total_seconds(), 1),
            },
        )

    async def _drive(self) -> None:
        while self._running:
            now = datetime.now().astimezone()
            next_run = self.next_fire_time(now)
            if await self._sleep((next_run - now).total_seconds()):
                return
            self._fire()


def build_scheduler(spec: str, task: Task, enabled: bool = True, name: str | None = None) -> _Scheduler:
    """Cron scheduler for cron specs, interval scheduler otherwise."""
    if is_cron_spec(spec):
        return CronScheduler(spec, task, enabled=enabled, name=name)
    return IntervalScheduler(parse_interval(spec), task, enabled=enabled, name=name)
