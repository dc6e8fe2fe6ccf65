"""
uplink.py

Implements the ground-to-air command channel on the telemetry radio's
serial port. Each command is a 3-byte frame:

    [command, crc8(command), b' ']

Frames that break this layout or fail the checksum are discarded with a
warning. Valid commands are mapped onto the controller's shutdown and
restart requests.
"""

import asyncio
import enum
import logging
from typing import Optional

import serial_asyncio

log = logging.getLogger(__name__)

FRAME_LENGTH = 3
FRAME_END = 0x20
CRC8_POLY = 0xD5


def crc8(data: bytes) -> int:
    crc = 0
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x80:
                crc = ((crc << 1) ^ CRC8_POLY) & 0xFF
            else:
                crc = (crc << 1) & 0xFF
    return crc


class UplinkCommand(enum.IntEnum):
    STOP_STREAM = 110
    RESTART_STREAM = 120


def encode_frame(command: int) -> bytes:
    return bytes([command, crc8(bytes([command])), FRAME_END])


class FrameDecoder:
    """
    Incremental decoder for command frames.

    feed() accepts any chunk of bytes and returns the command bytes of the
    complete, checksum-valid frames it contained.
    """

    def __init__(self):
        self._buf = bytearray()
        self.rejected = 0

    def feed(self, data: bytes) -> list[int]:
        commands = []
        for byte in data:
            self._buf.append(byte)
            buf = self._buf
            if len(buf) == FRAME_LENGTH and buf[-1] != FRAME_END:
                self._reject(f"Frame invalid: {bytes(buf)!r}")
                continue
            if len(buf) < FRAME_LENGTH and FRAME_END in buf:
                self._reject(f"Frame invalid: {bytes(buf)!r}")
                continue
            if len(buf) < FRAME_LENGTH:
                continue

            command, check = buf[0], buf[1]
            expected = crc8(bytes([command]))
            if check != expected:
                self._reject(f"Checksums do not match ({check} != {expected}), discarding frame")
                continue
            buf.clear()
            commands.append(command)
        return commands

    def _reject(self, message: str):
        log.warning(f"[Uplink] {message}")
        self._buf.clear()
        self.rejected += 1


class UplinkReceiver:
    """
    Reads command frames from the radio and forwards them to the controller.

    Args:
        controller: StreamController (needs request_shutdown() and request_restart()).
        port (str): Serial device of the telemetry radio.
        baudrate (int): Radio serial speed.
    """

    def __init__(self, controller, port: str = "/dev/ttyAMA2", baudrate: int = 57600):
        self.controller = controller
        self.port = port
        self.baudrate = baudrate
        self.decoder = FrameDecoder()
        self.writer: Optional[asyncio.StreamWriter] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        log.info(f"[Uplink] Opening {self.port} @ {self.baudrate} baud")
        reader, self.writer = await serial_asyncio.open_serial_connection(
            url=self.port, baudrate=self.baudrate
        )
        self._task = asyncio.create_task(self.consume(reader), name="uplink")

    async def stop(self):
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.writer is not None:
            self.writer.close()
            self.writer = None
        log.info("[Uplink] Stopped")

    async def consume(self, reader: asyncio.StreamReader):
        """Decode frames from *reader* until it reaches EOF."""
        while True:
            chunk = await reader.read(64)
            if not chunk:
                log.warning("[Uplink] Radio stream closed")
                return
            for command in self.decoder.feed(chunk):
                self.dispatch(command)

    def dispatch(self, command: int) -> bool:
        try:
            cmd = UplinkCommand(command)
        except ValueError:
            log.warning(f"[Uplink] Got invalid command {command}")
            return False
        log.info(f"[Uplink] Received {cmd.name}")
        if cmd is UplinkCommand.STOP_STREAM:
            self.controller.request_shutdown("uplink stop command")
        elif cmd is UplinkCommand.RESTART_STREAM:
            self.controller.request_restart("uplink restart command")
        return True
