"""
commands.py

Builds the argument vectors for the two external tools of a pipeline:
the camera capture CLI (raw YUV420 frames on stdout) and the ffmpeg
encoder/streamer (raw frames on stdin, RTP/MPEG-TS over UDP out).
"""

from .pipeline_spec import PipelineSpec, QUALITY_TIERS


class StreamCommands:
    """
    Callable turning a PipelineSpec into (capture_argv, encoder_argv).

    Args:
        tools: ToolSettings-like object (capture_binary, encoder_binary,
            sensor_mode, hdr, encoders, service_provider, ffmpeg_loglevel).
        tier_name_for: Optional callable giving the stream title for a spec.
    """

    def __init__(self, tools, tier_name_for=None):
        self.tools = tools
        self.tier_name_for = tier_name_for

    def __call__(self, spec: PipelineSpec) -> tuple[list[str], list[str]]:
        return self.capture_argv(spec), self.encoder_argv(spec)

    def capture_argv(self, spec: PipelineSpec) -> list[str]:
        argv = [self.tools.capture_binary, "-t", "0", "-n"]
        if self.tools.hdr:
            argv.append("--hdr")
        if self.tools.sensor_mode:
            argv += ["--mode", self.tools.sensor_mode]
        argv += [
            "--width", str(spec.width),
            "--height", str(spec.height),
            "--framerate", str(spec.framerate),
            "--codec", "yuv420",
            "-o", "-",
        ]
        return argv

    def encoder_argv(self, spec: PipelineSpec) -> list[str]:
        encoder = self.tools.encoders.get(spec.codec, spec.codec)
        title = self.tier_name_for(spec) if self.tier_name_for else QUALITY_TIERS[0].name
        return [
            self.tools.encoder_binary,
            "-y", "-hide_banner",
            "-loglevel", self.tools.ffmpeg_loglevel,
            "-f", "rawvideo",
            "-c:v", "rawvideo",
            "-s", f"{spec.width}x{spec.height}",
            "-r", str(spec.framerate),
            "-i", "pipe:",
            "-metadata", f"Title={title}",
            "-metadata", f"service_provider={self.tools.service_provider}",
            "-c:v", encoder,
            "-b:v", f"{spec.bitrate // 1000}k",
            "-an",
            "-f", "rtp_mpegts",
            udp_url(spec),
        ]


def udp_url(spec: PipelineSpec) -> str:
    host = spec.host
    if ":" in host:
        host = f"[{host}]"
    return f"udp://{host}:{spec.port}?ttl={spec.ttl}"


def tier_title(base: PipelineSpec):
    """Title resolver naming a spec by the tier it was scaled to from *base*."""
    def _title(spec: PipelineSpec) -> str:
        ratio = spec.height / base.height
        best = min(QUALITY_TIERS, key=lambda t: abs(t.resolution_scale - ratio))
        return best.name
    return _title
