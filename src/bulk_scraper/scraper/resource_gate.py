"""Resource-aware admission control for execution jobs.

Two independent duties share one sampler and one set of thresholds:

- :class:`AdmissionGate` runs before every execution attempt.  When memory
  or CPU is over threshold the attempt is refused: the worker sleeps for the
  cooldown window and then raises
  :class:`~bulk_scraper.core.exceptions.ResourceLimitExceededError`, which
  consumes one attempt of the job's budget.
- :class:`ResourceMonitor` samples on a fixed interval, independent of any
  job, and pauses or resumes intake of the execution queue through an
  :class:`IntakeController`.  It pauses on the first sample over threshold
  and resumes on the first sample back under it.

Neither duty interrupts work that has already started.

Memory is the worker process's resident set as a percentage of host RAM.
CPU is the 1-minute load average divided by the logical CPU count, as a
percentage, so a fully busy host reads 100 regardless of core count.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import psutil
import structlog
from celery import Celery

from bulk_scraper.core.exceptions import ResourceLimitExceededError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceSample:
    memory_percent: float
    cpu_percent: float


@dataclass(frozen=True)
class ResourceThresholds:
    max_memory_percent: float = 80.0
    max_cpu_percent: float = 80.0

    def exceeded_by(self, sample: ResourceSample) -> bool:
        return (
            sample.memory_percent > self.max_memory_percent
            or sample.cpu_percent > self.max_cpu_percent
        )


class Sampler(Protocol):
    def sample(self) -> ResourceSample: ...


class PsutilSampler:
    """Samples the current process and host with psutil.

    Args:
        process: Process to measure; defaults to the current one.
        include_children: Add the memory of descendant processes (prefork
            pool children, browser processes).
    """

    def __init__(
        self, process: psutil.Process | None = None, include_children: bool = False
    ) -> None:
        self._process = process or psutil.Process()
        self._include_children = include_children

    def _memory_percent(self) -> float:
        memory = self._process.memory_percent()
        if not self._include_children:
            return memory
        for child in self._process.children(recursive=True):
            try:
                memory += child.memory_percent()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return memory

    def sample(self) -> ResourceSample:
        memory = self._memory_percent()
        load_1m, _, _ = psutil.getloadavg()
        cpus = psutil.cpu_count() or 1
        return ResourceSample(
            memory_percent=round(memory, 2),
            cpu_percent=round(load_1m / cpus * 100, 2),
        )


@dataclass(frozen=True)
class Admission:
    allowed: bool
    sample: ResourceSample


class AdmissionGate:
    """Per-attempt pre-execution check.

    Args:
        sampler: Source of resource readings.
        thresholds: Limits above which an attempt is refused.
        cooldown: Seconds the worker throttles after a refusal.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        sampler: Sampler,
        thresholds: ResourceThresholds,
        cooldown: float,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._sampler = sampler
        self._thresholds = thresholds
        self._cooldown = cooldown
        self._sleep = sleep

    def check(self) -> Admission:
        sample = self._sampler.sample()
        return Admission(allowed=not self._thresholds.exceeded_by(sample), sample=sample)

    async def admit(self) -> ResourceSample | None:
        """Return the sample if the attempt may begin.

        A sampler failure admits the attempt and returns ``None``: the gate
        fails open, like the intake monitor.

        Raises:
            ResourceLimitExceededError: After the cooldown, when refused.
        """
        try:
            admission = self.check()
        except Exception as exc:  # noqa: BLE001
            logger.error("resource sample failed; admitting attempt", error=str(exc))
            return None
        if admission.allowed:
            return admission.sample
        sample = admission.sample
        logger.warning(
            "admission refused",
            memory_percent=sample.memory_percent,
            cpu_percent=sample.cpu_percent,
            cooldown=self._cooldown,
        )
        await self._sleep(self._cooldown)
        raise ResourceLimitExceededError(
            memory_percent=sample.memory_percent,
            cpu_percent=sample.cpu_percent,
            cooldown=self._cooldown,
        )


class IntakeController(Protocol):
    def pause(self) -> None: ...

    def resume(self) -> None: ...


class CeleryIntakeController:
    """Stops and restarts consumption of one queue on one worker.

    Args:
        app: The Celery application.
        queue: Queue whose intake is gated.
        hostname: Worker node name; when ``None`` the command is broadcast.
    """

    def __init__(self, app: Celery, queue: str, hostname: str | None = None) -> None:
        self._app = app
        self._queue = queue
        self._destination = [hostname] if hostname else None

    def pause(self) -> None:
        self._app.control.cancel_consumer(self._queue, destination=self._destination)

    def resume(self) -> None:
        self._app.control.add_consumer(self._queue, destination=self._destination)


class ResourceMonitor:
    """Periodic sampler that flips queue intake between running and paused.

    :meth:`tick` performs one check and is what tests drive directly;
    :meth:`start` runs it every *interval* seconds on a daemon thread until
    :meth:`stop`.

    Args:
        sampler: Source of resource readings.
        thresholds: Limits above which intake is paused.
        controller: Receives pause/resume transitions.
        interval: Seconds between samples.
        clock: Returns the current time; recorded with each sample.
    """

    def __init__(
        self,
        sampler: Sampler,
        thresholds: ResourceThresholds,
        controller: IntakeController,
        interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sampler = sampler
        self._thresholds = thresholds
        self._controller = controller
        self._interval = interval
        self._clock = clock
        self._paused = False
        self._last_sample: ResourceSample | None = None
        self._last_sample_at: float | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status(self) -> dict[str, Any]:
        sample = self._last_sample
        return {
            "paused": self._paused,
            "memory_percent": sample.memory_percent if sample else None,
            "cpu_percent": sample.cpu_percent if sample else None,
            "sampled_at": self._last_sample_at,
        }

    def tick(self) -> bool:
        """Sample once and apply the pause/resume transition.

        Returns:
            Whether intake is paused after this tick.
        """
        try:
            sample = self._sampler.sample()
        except Exception as exc:  # noqa: BLE001
            logger.error("resource sample failed", error=str(exc))
            return self._paused

        self._last_sample = sample
        self._last_sample_at = self._clock()
        over = self._thresholds.exceeded_by(sample)

        if over and not self._paused:
            self._transition(self._controller.pause, paused=True, sample=sample)
        elif not over and self._paused:
            self._transition(self._controller.resume, paused=False, sample=sample)
        return self._paused

    def _transition(
        self, action: Callable[[], None], *, paused: bool, sample: ResourceSample
    ) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "intake transition failed",
                paused=paused,
                error=str(exc),
            )
            return
        self._paused = paused
        logger.warning(
            "intake paused" if paused else "intake resumed",
            memory_percent=sample.memory_percent,
            cpu_percent=sample.cpu_percent,
        )

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="resource-monitor", daemon=True
        )
        self._thread.start()
        logger.info("resource monitor started", interval=self._interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout if timeout is not None else self._interval + 1)
            self._thread = None
        logger.info("resource monitor stopped")

    def _run(self) -> None:
        self.tick()
        while not self._stop_event.wait(self._interval):
            self.tick()
