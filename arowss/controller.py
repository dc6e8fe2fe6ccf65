"""
controller.py

Implements StreamController, the top-level state machine of the payload.
Each tick it reads the latest link sample, picks a quality tier and, when the
tier moves far enough for long enough, restarts the pipeline with a scaled
spec. Launch failures and unexpected exits are retried with bounded
exponential backoff. All process handling is delegated to ProcessSupervisor.
"""

import asyncio
import enum
import logging
import time
import weakref
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import ConfigError, LaunchError, RuntimeExitError
from .link_monitor import LatestValue
from .pipeline_spec import (
    QUALITY_TIERS,
    LinkSample,
    PipelineSpec,
    QualityTier,
    apply_tier,
    select_tier,
    tier_index,
)

log = logging.getLogger(__name__)

HISTORY_LENGTH = 64


class ControllerPhase(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    RECONFIGURING = "reconfiguring"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class BackoffPolicy:
    """Exponential retry delays: initial * factor^(n-1), capped at maximum."""

    initial: float = 1.0
    factor: float = 2.0
    maximum: float = 30.0
    max_attempts: int = 5

    def delay(self, failures: int) -> float:
        return min(self.maximum, self.initial * self.factor ** max(0, failures - 1))


@dataclass
class ControllerState:
    phase: ControllerPhase = ControllerPhase.IDLE
    current_spec: Optional[PipelineSpec] = None
    current_tier: Optional[str] = None
    process_ref: Optional[weakref.ref] = None
    last_sample: Optional[LinkSample] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    starts: int = 0
    fatal: bool = False
    history: deque = field(default_factory=lambda: deque(maxlen=HISTORY_LENGTH))

    @property
    def process(self):
        return self.process_ref() if self.process_ref is not None else None


class _ShutdownRequested(Exception):
    pass


class StreamController:
    """
    Drives IDLE -> STARTING -> RUNNING <-> RECONFIGURING -> STOPPING -> STOPPED.

    Args:
        load_base_spec: Callable returning the base PipelineSpec (may raise ConfigError).
        supervisor: ProcessSupervisor owning the process pair.
        monitor: LinkQualityMonitor publishing LinkSample values.
        tick_interval (float): Seconds between control decisions.
        hysteresis_margin (int): Minimum tier distance that triggers a reconfiguration.
        hold_samples (int): Consecutive fresh samples that must agree before reconfiguring.
        backoff (BackoffPolicy): Retry policy for launch failures and unexpected exits.
        stable_after (float): Uptime after which the failure counter is cleared.
        shutdown_timeout (float): Bound on the final pipeline teardown.
    """

    def __init__(
        self,
        load_base_spec: Callable[[], PipelineSpec],
        supervisor,
        monitor,
        tick_interval: float = 1.0,
        hysteresis_margin: int = 1,
        hold_samples: int = 2,
        backoff: Optional[BackoffPolicy] = None,
        stable_after: float = 30.0,
        shutdown_timeout: float = 10.0,
    ):
        self.load_base_spec = load_base_spec
        self.supervisor = supervisor
        self.monitor = monitor
        self.tick_interval = tick_interval
        self.hysteresis_margin = hysteresis_margin
        self.hold_samples = hold_samples
        self.backoff = backoff or BackoffPolicy()
        self.stable_after = stable_after
        self.shutdown_timeout = shutdown_timeout

        self.state = ControllerState()
        self.base_spec: Optional[PipelineSpec] = None
        self._shutdown = asyncio.Event()
        self._shutdown_reason: Optional[str] = None
        self._restart = asyncio.Event()
        self._phase_slot = LatestValue()
        self._pending_tier: Optional[str] = None
        self._pending_count = 0

    # ---- operator surface ----

    def request_shutdown(self, reason: str = "operator request"):
        if not self._shutdown.is_set():
            log.warning(f"[Controller] Shutdown requested: {reason}")
            self._shutdown_reason = reason
            self._shutdown.set()

    def request_restart(self, reason: str = "operator request"):
        """Restart the running pipeline with its current spec. Not counted as a failure."""
        if not self._shutdown.is_set():
            log.warning(f"[Controller] Restart requested: {reason}")
            self._restart.set()

    def snapshot(self) -> dict:
        """JSON-safe view of the controller state for operators."""
        s = self.state
        process = s.process
        return {
            "phase": s.phase.value,
            "tier": s.current_tier,
            "spec": s.current_spec.model_dump() if s.current_spec else None,
            "generation": process.generation if process else None,
            "pids": process.pids if process else None,
            "uptime": round(process.uptime(), 1) if process else 0.0,
            "last_sample": s.last_sample.as_dict() if s.last_sample else None,
            "last_error": s.last_error,
            "consecutive_failures": s.consecutive_failures,
            "starts": s.starts,
            "fatal": s.fatal,
            "shutdown_reason": self._shutdown_reason,
        }

    async def wait_for_phase(self, phase: ControllerPhase, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        version, _ = self._phase_slot.peek()
        while self.state.phase is not phase:
            try:
                version, _ = await self._phase_slot.wait_newer(
                    version, timeout=max(0.0, deadline - loop.time())
                )
            except asyncio.TimeoutError:
                return False
        return True

    # ---- main loop ----

    async def run(self) -> ControllerState:
        """Run until shutdown or fatal failure. Never leaves a pipeline running."""
        try:
            self._set_phase(ControllerPhase.IDLE)
            try:
                self.base_spec = self.load_base_spec()
            except ConfigError as e:
                self.state.last_error = str(e)
                self.state.fatal = True
                log.critical(f"[Controller] Bad base configuration: {e}")
                raise
            self.monitor.start()

            spec, tier = self.base_spec, QUALITY_TIERS[0]
            self._set_phase(ControllerPhase.STARTING)
            while True:
                self._check_shutdown()
                if not await self._launch(spec, tier):
                    break
                outcome = await self._supervise()
                if isinstance(outcome, QualityTier):
                    tier = outcome
                    spec = apply_tier(self.base_spec, tier)
                    await self._stop_current(ControllerPhase.RECONFIGURING)
                else:
                    spec, tier = self.state.current_spec, self._tier(self.state.current_tier)
                    self._set_phase(ControllerPhase.STARTING)
                    if not await self._after_failure(outcome):
                        break
        except _ShutdownRequested:
            pass
        finally:
            await self._teardown()
        return self.state

    async def _launch(self, spec: PipelineSpec, tier: QualityTier) -> bool:
        """Start *spec*, retrying LaunchError with backoff. False when attempts are exhausted."""
        while True:
            try:
                process = await self._interruptible(self.supervisor.start(spec))
            except LaunchError as e:
                self._set_phase(ControllerPhase.STARTING)
                if not await self._after_failure(e):
                    return False
                continue
            self._adopt(process, spec, tier)
            return True

    async def _after_failure(self, error) -> bool:
        """Record a failure and wait out the backoff. False when no retry is left."""
        self.state.consecutive_failures += 1
        failures = self.state.consecutive_failures
        self.state.last_error = f"{type(error).__name__}: {error}"
        if failures >= self.backoff.max_attempts:
            self.state.fatal = True
            log.critical(
                f"[Controller] Giving up after {failures} consecutive failures; last error: {error}"
            )
            return False
        delay = self.backoff.delay(failures)
        log.warning(
            f"[Controller] {self.state.last_error}; retrying in {delay:.1f}s "
            f"(failure {failures}/{self.backoff.max_attempts})"
        )
        await self._interruptible(asyncio.sleep(delay))
        return True

    async def _supervise(self):
        """
        Watch the running pipeline. Returns a QualityTier to (re)start with,
        or the RuntimeExitError that ended the pipeline.
        """
        process = self.state.process
        exit_future = self.supervisor.watch(process)
        self._restart.clear()
        while True:
            stop_wait = asyncio.create_task(self._shutdown.wait())
            restart_wait = asyncio.create_task(self._restart.wait())
            try:
                await asyncio.wait(
                    {exit_future, stop_wait, restart_wait},
                    timeout=self.tick_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                stop_wait.cancel()
                restart_wait.cancel()
            self._check_shutdown()

            if exit_future.done():
                error = exit_future.result()
                return error or RuntimeExitError("pipeline ended without an exit report")

            if self._restart.is_set():
                self._restart.clear()
                log.info(f"[Controller] Restarting generation {process.generation} on request")
                return self._tier(self.state.current_tier)

            if self.state.consecutive_failures and process.uptime() >= self.stable_after:
                log.info(f"[Controller] Pipeline stable for {self.stable_after:.0f}s; clearing failure count.")
                self.state.consecutive_failures = 0

            sample = self.monitor.latest()
            if sample is None or sample is self.state.last_sample:
                continue
            self.state.last_sample = sample
            candidate = select_tier(sample)
            if self._should_switch(candidate):
                log.info(
                    f"[Controller] Link loss={sample.packet_loss:.2f} signal={sample.signal_metric}: "
                    f"tier {self.state.current_tier} -> {candidate.name}"
                )
                return candidate

    def _should_switch(self, candidate: QualityTier) -> bool:
        distance = abs(tier_index(candidate.name) - tier_index(self.state.current_tier))
        if distance < self.hysteresis_margin or apply_tier(self.base_spec, candidate) == self.state.current_spec:
            self._pending_tier, self._pending_count = None, 0
            return False
        if candidate.name == self._pending_tier:
            self._pending_count += 1
        else:
            self._pending_tier, self._pending_count = candidate.name, 1
        return self._pending_count >= self.hold_samples

    def _adopt(self, process, spec: PipelineSpec, tier: QualityTier):
        self.state.current_spec = spec
        self.state.current_tier = tier.name
        self.state.process_ref = weakref.ref(process)
        self.state.starts += 1
        self._pending_tier, self._pending_count = None, 0
        self._set_phase(ControllerPhase.RUNNING)
        log.info(f"[Controller] Streaming tier '{tier.name}': {spec.describe()}")

    async def _stop_current(self, phase: ControllerPhase):
        self._set_phase(phase)
        process = self.state.process
        if process is not None:
            # Bounded by the supervisor's stop timeout; not interrupted so the
            # camera is released before anything else happens.
            await self.supervisor.stop(process)
        self.state.process_ref = None

    async def _teardown(self):
        if self.state.phase is ControllerPhase.STOPPED:
            return
        self._set_phase(ControllerPhase.STOPPING)
        try:
            await asyncio.wait_for(self.supervisor.shutdown(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            log.error(f"[Controller] Pipeline teardown exceeded {self.shutdown_timeout:.1f}s")
        finally:
            self.state.process_ref = None
            try:
                await self.monitor.stop()
            except Exception as e:
                log.error(f"[Controller] Link monitor failed while stopping: {type(e).__name__}: {e}")
            self._set_phase(ControllerPhase.STOPPED)

    # ---- helpers ----

    def _tier(self, name: Optional[str]) -> QualityTier:
        return QUALITY_TIERS[tier_index(name)] if name else QUALITY_TIERS[0]

    def _set_phase(self, phase: ControllerPhase):
        old = self.state.phase
        self.state.phase = phase
        self.state.history.append((phase, time.monotonic()))
        self._phase_slot.put(phase)
        if old is not phase:
            log.info(f"[Controller] {old.value} -> {phase.value}")

    def _check_shutdown(self):
        if self._shutdown.is_set():
            raise _ShutdownRequested()

    async def _interruptible(self, coro):
        """Await *coro* unless shutdown is requested first, in which case it is cancelled."""
        if self._shutdown.is_set():
            coro.close()
            raise _ShutdownRequested()
        task = asyncio.ensure_future(coro)
        stop_wait = asyncio.create_task(self._shutdown.wait())
        try:
            await asyncio.wait({task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise _ShutdownRequested()
        return task.result()
