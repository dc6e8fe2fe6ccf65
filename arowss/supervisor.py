"""
supervisor.py

Implements ProcessSupervisor, the owner of the capture -> encode process pair.
The capture tool's stdout is joined to the encoder's stdin with an OS pipe.
Only one pair is ever active: the camera is an exclusively owned device, so a
new pipeline is started only after the previous one is fully stopped.
Restart policy is not handled here; failures are reported to the controller.
"""

import asyncio
import enum
import logging
import os
import time
from collections import deque
from typing import Callable, Optional

from .errors import LaunchError, RuntimeExitError
from .pipeline_spec import PipelineSpec

log = logging.getLogger(__name__)

CommandFactory = Callable[[PipelineSpec], tuple[list[str], list[str]]]


class ProcessState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class PipelineProcess:
    """
    Handle to one running capture + encoder pair.

    Created and owned by ProcessSupervisor; other components should hold a
    weak reference and never terminate the processes themselves.
    """

    def __init__(self, spec: PipelineSpec, generation: int, tail_lines: int = 20):
        self.spec = spec
        self.generation = generation
        self.state = ProcessState.STARTING
        self.capture: Optional[asyncio.subprocess.Process] = None
        self.encoder: Optional[asyncio.subprocess.Process] = None
        self.started_at: Optional[float] = None
        self.stderr_tail: deque[str] = deque(maxlen=tail_lines)
        self._readers: list[asyncio.Task] = []
        self._exit_task: Optional[asyncio.Task] = None
        self._stopping = False

    def _procs(self):
        return (("capture", self.capture), ("encoder", self.encoder))

    @property
    def pids(self) -> dict[str, Optional[int]]:
        return {role: (p.pid if p else None) for role, p in self._procs()}

    def returncodes(self) -> dict[str, Optional[int]]:
        return {role: (p.returncode if p else None) for role, p in self._procs()}

    def is_alive(self) -> bool:
        return self.state is ProcessState.RUNNING and all(
            p is not None and p.returncode is None for _, p in self._procs()
        )

    def uptime(self) -> float:
        if self.started_at is None or self.state is not ProcessState.RUNNING:
            return 0.0
        return time.monotonic() - self.started_at

    def tail(self) -> list[str]:
        return list(self.stderr_tail)

    def __repr__(self):
        return (
            f"<PipelineProcess gen={self.generation} state={self.state.value} "
            f"pids={self.pids} spec={self.spec.describe()}>"
        )


class ProcessSupervisor:
    """
    Starts, stops and watches the pipeline process pair.

    Args:
        command_factory: Callable mapping a PipelineSpec to
            (capture_argv, encoder_argv).
        startup_timeout (float): Upper bound on spawning plus liveness check.
        startup_settle (float): Both processes must survive this long to be
            considered alive.
        stop_timeout (float): Grace period after SIGTERM before SIGKILL.
        tail_lines (int): Number of stderr lines kept for diagnostics.
    """

    def __init__(
        self,
        command_factory: CommandFactory,
        startup_timeout: float = 3.0,
        startup_settle: float = 1.0,
        stop_timeout: float = 2.0,
        tail_lines: int = 20,
    ):
        self.command_factory = command_factory
        self.startup_timeout = startup_timeout
        # Leave headroom for the spawn itself inside the startup timeout.
        self.startup_settle = min(startup_settle, startup_timeout / 2)
        self.stop_timeout = stop_timeout
        self.tail_lines = tail_lines
        self._active: Optional[PipelineProcess] = None
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def active(self) -> Optional[PipelineProcess]:
        return self._active

    async def start(self, spec: PipelineSpec) -> PipelineProcess:
        """
        Launch a pipeline for *spec*, stopping any active one first.

        Raises:
            LaunchError: a tool could not be spawned or exited before it was
                considered alive. No child process survives the failure.
        """
        async with self._lock:
            if self._active is not None:
                log.info(f"[Supervisor] Stopping generation {self._active.generation} before restart.")
                await self._stop_locked(self._active)

            self._generation += 1
            process = PipelineProcess(spec, self._generation, self.tail_lines)
            capture_argv, encoder_argv = self.command_factory(spec)
            log.info(f"[Supervisor] Starting generation {process.generation}: {spec.describe()}")
            log.debug(f"[Supervisor] capture: {' '.join(capture_argv)}")
            log.debug(f"[Supervisor] encoder: {' '.join(encoder_argv)}")

            try:
                await asyncio.wait_for(
                    self._launch(process, capture_argv, encoder_argv),
                    timeout=self.startup_timeout,
                )
            except asyncio.TimeoutError:
                await self._teardown(process)
                process.state = ProcessState.FAILED
                raise LaunchError(
                    f"Pipeline did not come up within {self.startup_timeout:.1f}s",
                    process.tail(),
                ) from None
            except LaunchError:
                await self._teardown(process)
                process.state = ProcessState.FAILED
                raise
            except BaseException:
                # Cancelled mid-launch: nothing may outlive the request.
                await self._teardown(process)
                process.state = ProcessState.STOPPED
                raise

            process.state = ProcessState.RUNNING
            process.started_at = time.monotonic()
            process._exit_task = asyncio.create_task(self._watch_exit(process))
            self._active = process
            log.info(f"[Supervisor] Generation {process.generation} running, pids {process.pids}")
            return process

    async def stop(self, process: PipelineProcess):
        """Terminate a pipeline (SIGTERM, then SIGKILL) and release its resources."""
        async with self._lock:
            await self._stop_locked(process)

    def watch(self, process: PipelineProcess) -> asyncio.Future:
        """
        Return an awaitable that resolves when *process* ends.

        Result is a RuntimeExitError for an unexpected exit, or None when the
        pipeline was stopped through this supervisor.
        """
        if process._exit_task is None:
            fut = asyncio.get_running_loop().create_future()
            fut.set_result(None)
            return fut
        return process._exit_task

    async def shutdown(self):
        """Stop the active pipeline, if any."""
        async with self._lock:
            if self._active is not None:
                await self._stop_locked(self._active)

    async def _stop_locked(self, process: PipelineProcess):
        if process.state is ProcessState.STOPPED:
            if self._active is process:
                self._active = None
            return
        process._stopping = True
        log.info(f"[Supervisor] Stopping generation {process.generation} (pids {process.pids})")
        try:
            await self._teardown(process)
            if process._exit_task is not None:
                await asyncio.gather(process._exit_task, return_exceptions=True)
        finally:
            process.state = ProcessState.STOPPED
            if self._active is process:
                self._active = None
        log.info(
            f"[Supervisor] Generation {process.generation} stopped, exit codes {process.returncodes()}"
        )

    async def _launch(self, process: PipelineProcess, capture_argv, encoder_argv):
        read_fd, write_fd = os.pipe()
        try:
            try:
                process.capture = await asyncio.create_subprocess_exec(
                    *capture_argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=write_fd,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as e:
                raise LaunchError(f"Could not start capture tool {capture_argv[0]!r}: {e}") from e
            self._track_stderr(process, "capture", process.capture)

            try:
                process.encoder = await asyncio.create_subprocess_exec(
                    *encoder_argv,
                    stdin=read_fd,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as e:
                raise LaunchError(
                    f"Could not start encoder {encoder_argv[0]!r}: {e}", process.tail()
                ) from e
            self._track_stderr(process, "encoder", process.encoder)
        finally:
            # The children hold their own copies; ours would keep the pipe
            # open after either side exits.
            os.close(read_fd)
            os.close(write_fd)

        await self._settle(process)

    async def _settle(self, process: PipelineProcess):
        waiters = {
            asyncio.create_task(process.capture.wait()): "capture",
            asyncio.create_task(process.encoder.wait()): "encoder",
        }
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.startup_settle, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if done:
            role = waiters[next(iter(done))]
            proc = process.capture if role == "capture" else process.encoder
            await self._drain_readers(process, timeout=0.5)
            raise LaunchError(
                f"{role} exited with code {proc.returncode} during startup", process.tail()
            )

    def _track_stderr(self, process: PipelineProcess, role: str, proc: asyncio.subprocess.Process):
        process._readers.append(asyncio.create_task(self._read_stderr(process, role, proc)))

    async def _read_stderr(self, process: PipelineProcess, role: str, proc: asyncio.subprocess.Process):
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                process.stderr_tail.append(f"{role}: {text}")
                log.debug(f"[Supervisor] {role}[{proc.pid}]: {text}")

    async def _drain_readers(self, process: PipelineProcess, timeout: float):
        if not process._readers:
            return
        _, pending = await asyncio.wait(process._readers, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*process._readers, return_exceptions=True)

    async def _terminate(self, role: str, proc: Optional[asyncio.subprocess.Process]):
        if proc is None:
            return
        try:
            if proc.returncode is None:
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout)
                except asyncio.TimeoutError:
                    log.warning(f"[Supervisor] {role} (pid {proc.pid}) ignored SIGTERM; killing.")
                    try:
                        proc.kill()
                    except ProcessLookupError:
                        pass
            await proc.wait()
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass

    async def _teardown(self, process: PipelineProcess):
        await asyncio.gather(*(self._terminate(role, proc) for role, proc in process._procs()))
        await self._drain_readers(process, timeout=self.stop_timeout)

    async def _watch_exit(self, process: PipelineProcess) -> Optional[RuntimeExitError]:
        waiters = {
            asyncio.create_task(process.capture.wait()): "capture",
            asyncio.create_task(process.encoder.wait()): "encoder",
        }
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if process._stopping:
            return None

        role = waiters[next(iter(done))]
        codes = process.returncodes()
        process.state = ProcessState.FAILED
        log.error(
            f"[Supervisor] {role} of generation {process.generation} exited unexpectedly "
            f"with code {codes[role]}; tearing down the pair."
        )
        await self._teardown(process)
        return RuntimeExitError(
            f"{role} exited unexpectedly with code {codes[role]}",
            returncodes=process.returncodes(),
            stderr_tail=process.tail(),
        )
