"""Tests for the CRC8-framed radio uplink commands."""

import asyncio

from arowss.uplink import FrameDecoder, UplinkCommand, UplinkReceiver, crc8, encode_frame

STOP = UplinkCommand.STOP_STREAM
RESTART = UplinkCommand.RESTART_STREAM


class RecordingController:
    def __init__(self):
        self.calls = []

    def request_shutdown(self, reason="operator request"):
        self.calls.append("shutdown")

    def request_restart(self, reason="operator request"):
        self.calls.append("restart")


def test_crc8_known_values():
    assert crc8(b"") == 0
    assert crc8(b"\x00") == 0
    assert crc8(b"\x01") == 0xD5
    assert crc8(bytes([STOP])) == 0x91
    assert crc8(bytes([RESTART])) == 0x42


def test_valid_frames_decode_across_chunks():
    decoder = FrameDecoder()
    stream = encode_frame(STOP) + encode_frame(RESTART)

    assert decoder.feed(stream[:2]) == []
    assert decoder.feed(stream[2:4]) == [STOP]
    assert decoder.feed(stream[4:]) == [RESTART]
    assert decoder.rejected == 0


def test_bad_checksum_is_discarded():
    decoder = FrameDecoder()
    corrupt = bytes([STOP, 0x00, 0x20])

    assert decoder.feed(corrupt + encode_frame(RESTART)) == [RESTART]
    assert decoder.rejected == 1


def test_bad_framing_is_discarded():
    decoder = FrameDecoder()
    # Early terminator, then a frame missing its trailing space.
    garbage = bytes([STOP, 0x20]) + bytes([STOP, crc8(bytes([STOP])), 0x41])

    assert decoder.feed(garbage + encode_frame(STOP)) == [STOP]
    assert decoder.rejected == 2


def test_dispatch_maps_commands_to_controller():
    controller = RecordingController()
    receiver = UplinkReceiver(controller)

    assert receiver.dispatch(RESTART)
    assert receiver.dispatch(STOP)
    # Relay and camera-recorder codes are not handled by the payload controller.
    assert not receiver.dispatch(70)
    assert controller.calls == ["restart", "shutdown"]


def test_consume_reads_until_radio_closes():
    async def scenario():
        controller = RecordingController()
        receiver = UplinkReceiver(controller)
        reader = asyncio.StreamReader()
        reader.feed_data(bytes([RESTART, 0x13, 0x20]) + encode_frame(RESTART) + encode_frame(STOP))
        reader.feed_eof()
        await asyncio.wait_for(receiver.consume(reader), timeout=1.0)
        return controller, receiver

    controller, receiver = asyncio.run(scenario())
    assert controller.calls == ["restart", "shutdown"]
    assert receiver.decoder.rejected == 1
