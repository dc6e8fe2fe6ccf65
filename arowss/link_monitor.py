"""
link_monitor.py

Implements link quality monitoring for the downlink.
A background task samples ping loss to the ground station and the wireless
signal level at a fixed interval and publishes each LinkSample into a
latest-value-wins slot. A sample that cannot be taken is replaced with a
worst-case sample so the pipeline degrades instead of freezing.
"""

import asyncio
import logging
import math
import re
from pathlib import Path
from typing import AsyncIterator, Optional

from .errors import LinkSampleError
from .pipeline_spec import LinkSample

log = logging.getLogger(__name__)

_LOSS_RE = re.compile(rb"([\d.]+)% packet loss")


class LatestValue:
    """
    Single-slot mailbox: a new value replaces the old one, readers never see
    a backlog. Each put() bumps a version so waiters can ask for "newer than".
    """

    def __init__(self):
        self._value = None
        self._version = 0
        self._event = asyncio.Event()

    def put(self, value):
        self._value = value
        self._version += 1
        event, self._event = self._event, asyncio.Event()
        event.set()

    def peek(self) -> tuple[int, object]:
        return self._version, self._value

    async def wait_newer(self, version: int, timeout: Optional[float] = None) -> tuple[int, object]:
        """Wait until the slot holds a value newer than *version*."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._version <= version:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            await asyncio.wait_for(self._event.wait(), timeout=remaining)
        return self._version, self._value


class LinkProbe:
    """
    Measures link health with `ping` and /proc/net/wireless.

    Args:
        host (str): Address pinged to estimate packet loss (ground station).
        interface (str | None): Wireless interface whose signal level is read.
        count (int): Echo requests per sample.
        timeout (float): Per-reply wait in seconds.
        wireless_path (str): Location of the kernel wireless statistics.
    """

    def __init__(
        self,
        host: str,
        interface: Optional[str] = None,
        count: int = 3,
        timeout: float = 1.0,
        wireless_path: str = "/proc/net/wireless",
    ):
        self.host = host
        self.interface = interface
        self.count = count
        self.timeout = timeout
        self.wireless_path = Path(wireless_path)

    async def sample(self) -> LinkSample:
        loss = await self.measure_loss()
        return LinkSample(packet_loss=loss, signal_metric=self.read_signal())

    async def measure_loss(self) -> float:
        cmd = [
            "ping", "-n", "-q",
            "-c", str(self.count),
            "-i", "0.2",
            "-W", str(max(1, math.ceil(self.timeout))),
            self.host,
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise LinkSampleError(f"Could not run ping: {e}") from e
        try:
            out, err = await proc.communicate()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
        return parse_ping_loss(out, err, proc.returncode, self.host)

    def read_signal(self) -> Optional[float]:
        """Signal level in dBm, or None when no wireless interface is configured or present."""
        if not self.interface:
            return None
        try:
            text = self.wireless_path.read_text()
        except OSError:
            return None
        return parse_wireless_level(text, self.interface)


def parse_ping_loss(out: bytes, err: bytes, returncode: Optional[int], host: str) -> float:
    """Extract the loss fraction from ping's summary line."""
    match = _LOSS_RE.search(out)
    if match is None:
        detail = err.decode("utf-8", errors="replace").strip() or f"exit code {returncode}"
        raise LinkSampleError(f"ping {host} produced no loss summary: {detail}")
    return min(1.0, max(0.0, float(match.group(1)) / 100.0))


def parse_wireless_level(text: str, interface: str) -> Optional[float]:
    """
    Read the signal level column of /proc/net/wireless for *interface*.

    Lines look like: " wlan0: 0000   54.  -56.  -256        0 ..."
    """
    for line in text.splitlines()[2:]:
        name, sep, rest = line.partition(":")
        if not sep or name.strip() != interface:
            continue
        fields = rest.split()
        if len(fields) < 3:
            raise LinkSampleError(f"Malformed wireless stats for {interface}: {line.strip()}")
        try:
            return float(fields[2].rstrip("."))
        except ValueError as e:
            raise LinkSampleError(f"Bad signal level for {interface}: {fields[2]}") from e
    return None


class LinkQualityMonitor:
    """
    Background sampler publishing LinkSample values.

    - start()/stop() may be called repeatedly; each start() spawns a fresh task.
    - latest() never blocks; wait_latest() blocks at most *timeout*.
    - samples() is a lazy, endless async iterator over new samples.
    """

    def __init__(self, probe, interval: float = 2.0, sample_timeout: float = 5.0):
        """
        Args:
            probe: Object with an async sample() -> LinkSample method.
            interval (float): Seconds between samples.
            sample_timeout (float): Upper bound on a single probe call.
        """
        self.probe = probe
        self.interval = interval
        self.sample_timeout = sample_timeout
        self._slot = LatestValue()
        self._task: Optional[asyncio.Task] = None
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        log.info(f"[LinkMonitor] Sampling every {self.interval:.1f}s")
        self._task = asyncio.create_task(self._run(), name="link-monitor")

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("[LinkMonitor] Stopped")

    def latest(self) -> Optional[LinkSample]:
        return self._slot.peek()[1]

    async def wait_latest(self, timeout: float) -> Optional[LinkSample]:
        """Return the newest sample, waiting up to *timeout* if none exists yet."""
        version, value = self._slot.peek()
        if value is not None:
            return value
        try:
            _, value = await self._slot.wait_newer(version, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return value

    async def samples(self) -> AsyncIterator[LinkSample]:
        version, value = self._slot.peek()
        if value is not None:
            yield value
        while True:
            version, value = await self._slot.wait_newer(version)
            yield value

    async def sample_once(self) -> LinkSample:
        """Take one sample, substituting worst case on any probe failure."""
        try:
            return await asyncio.wait_for(self.probe.sample(), timeout=self.sample_timeout)
        except asyncio.TimeoutError:
            reason = f"probe timed out after {self.sample_timeout:.1f}s"
        except (LinkSampleError, OSError) as e:
            reason = str(e)
        except Exception as e:
            log.exception(f"[LinkMonitor] Probe raised {type(e).__name__}")
            reason = f"{type(e).__name__}: {e}"
        self.failures += 1
        log.warning(f"[LinkMonitor] Sample failed ({reason}); assuming worst-case link.")
        return LinkSample.worst()

    async def _run(self):
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            sample = await self.sample_once()
            self._slot.put(sample)
            log.debug(
                f"[LinkMonitor] loss={sample.packet_loss:.2f} "
                f"signal={sample.signal_metric} worst_case={sample.worst_case}"
            )
            await asyncio.sleep(max(0.0, self.interval - (loop.time() - started)))
