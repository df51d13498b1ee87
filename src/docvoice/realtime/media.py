"""
Local Media

Microphone capture, the uplink audio track handed to the peer connection,
and the output sink that plays remote audio.
"""

import asyncio
import errno
from dataclasses import dataclass
from typing import Protocol
from uuid import uuid4

import av
import structlog
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.mediastreams import AudioStreamTrack, MediaStreamError

from docvoice.config import Settings, settings as default_settings
from docvoice.core.errors import MicrophonePermissionError, PlaybackRejectedError

logger = structlog.get_logger()


@dataclass
class AudioConstraints:
    """Capture constraints for microphone acquisition."""

    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    sample_rate: int | None = 48000
    channels: int = 1

    def to_ffmpeg_options(self) -> dict[str, str]:
        # Processing flags are honoured by platform capture backends only
        options = {"channels": str(self.channels)}
        if self.sample_rate:
            options["sample_rate"] = str(self.sample_rate)
        return options


class LocalMediaStream:
    """A set of locally captured tracks that are stopped together."""

    def __init__(self, tracks: list[MediaStreamTrack]) -> None:
        self.id = uuid4().hex
        self._tracks = list(tracks)

    def get_tracks(self) -> list[MediaStreamTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> list[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    @property
    def live(self) -> bool:
        return any(t.readyState == "live" for t in self._tracks)

    def stop(self) -> None:
        for track in self._tracks:
            track.stop()


class MediaDevices(Protocol):
    """Source of microphone streams."""

    async def get_user_media(
        self, constraints: AudioConstraints | None = None
    ) -> LocalMediaStream: ...


def _microphone_error(error: OSError) -> MicrophonePermissionError:
    if isinstance(error, PermissionError):
        return MicrophonePermissionError("denied", str(error))
    if isinstance(error, FileNotFoundError):
        return MicrophonePermissionError("not_found", str(error))
    if error.errno == errno.EBUSY:
        return MicrophonePermissionError("in_use", str(error))
    return MicrophonePermissionError("unavailable", str(error))


class FFmpegMediaDevices:
    """Captures the microphone through an FFmpeg input device."""

    def __init__(self, device: str | None = None, format: str | None = None) -> None:
        self.device = device or default_settings.microphone_device
        self.format = format or default_settings.microphone_format

    async def get_user_media(
        self, constraints: AudioConstraints | None = None
    ) -> LocalMediaStream:
        options = constraints.to_ffmpeg_options() if constraints else {}
        try:
            # Opening the device blocks until FFmpeg has probed it
            player = await asyncio.to_thread(
                MediaPlayer, self.device, format=self.format, options=options
            )
        except OSError as e:
            raise _microphone_error(e) from e
        except av.error.FFmpegError as e:
            raise MicrophonePermissionError("unavailable", str(e)) from e

        if player.audio is None:
            raise MicrophonePermissionError("not_found", f"{self.device} has no audio stream")

        logger.debug("Microphone acquired", device=self.device, options=options)
        return LocalMediaStream([player.audio])


class GatedAudioTrack(AudioStreamTrack):
    """
    Uplink audio track for the peer connection.

    Relays frames from the attached microphone track and emits paced
    silence whenever nothing live is attached, so the RTP sender keeps
    running while the microphone is released between recordings.
    """

    def __init__(self) -> None:
        super().__init__()
        self._source: MediaStreamTrack | None = None

    @property
    def source(self) -> MediaStreamTrack | None:
        return self._source

    def attach(self, track: MediaStreamTrack) -> None:
        self._source = track

    def detach(self) -> None:
        self._source = None

    async def recv(self):
        source = self._source
        if source is not None and source.readyState == "live":
            try:
                return await source.recv()
            except MediaStreamError:
                if self._source is source:
                    self._source = None
        return await super().recv()


# ══════════════════════════════════════════════════════════════
# Remote Audio Output
# ══════════════════════════════════════════════════════════════


class AudioOutput(Protocol):
    """Destination for the remote audio track."""

    async def play(self, track: MediaStreamTrack) -> None: ...

    async def stop(self) -> None: ...


class DevicePlaybackSink:
    """Plays remote audio on an FFmpeg output device."""

    def __init__(self, device: str = "default", format: str = "pulse") -> None:
        self.device = device
        self.format = format
        self._recorder: MediaRecorder | None = None

    async def play(self, track: MediaStreamTrack) -> None:
        await self.stop()
        try:
            recorder = MediaRecorder(self.device, format=self.format)
            recorder.addTrack(track)
            await recorder.start()
        except (OSError, av.error.FFmpegError) as e:
            raise PlaybackRejectedError(str(e)) from e
        self._recorder = recorder

    async def stop(self) -> None:
        if self._recorder is not None:
            recorder, self._recorder = self._recorder, None
            await recorder.stop()


class NullPlaybackSink:
    """Consumes remote audio without playing it."""

    def __init__(self) -> None:
        self._blackhole: MediaBlackhole | None = None

    async def play(self, track: MediaStreamTrack) -> None:
        await self.stop()
        self._blackhole = MediaBlackhole()
        self._blackhole.addTrack(track)
        await self._blackhole.start()

    async def stop(self) -> None:
        if self._blackhole is not None:
            blackhole, self._blackhole = self._blackhole, None
            await blackhole.stop()


def default_media_devices(config: Settings | None = None) -> FFmpegMediaDevices:
    config = config or default_settings
    return FFmpegMediaDevices(config.microphone_device, config.microphone_format)


__all__ = [
    "AudioConstraints",
    "LocalMediaStream",
    "MediaDevices",
    "FFmpegMediaDevices",
    "GatedAudioTrack",
    "AudioOutput",
    "DevicePlaybackSink",
    "NullPlaybackSink",
    "default_media_devices",
]
