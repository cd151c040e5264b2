"""
Media capture and remote playback.

The local microphone stream and the remote playback sink are owned by exactly
one voice session; mute toggles go through the session, which flips the
`enabled` flag of the gated tracks below.

Only sample rate and channel count reach ffmpeg as device options. Echo
cancellation, noise suppression and gain control depend on the device backend
(for example a PulseAudio echo-cancel source selected as the input device);
here those flags only appear in the capture log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from logging_setup import get_logger, Component
from .config import VoiceSessionConfig
from .errors import MediaAccessDenied


logger = get_logger(Component.MEDIA_CAPTURE)


@dataclass(frozen=True)
class AudioConstraints:
    """Capture settings requested from the input device."""

    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    sample_rate: int = 24000
    channel_count: int = 1

    @classmethod
    def from_config(cls, config: VoiceSessionConfig) -> "AudioConstraints":
        return cls(
            echo_cancellation=config.echo_cancellation,
            noise_suppression=config.noise_suppression,
            auto_gain_control=config.auto_gain_control,
            sample_rate=config.input_sample_rate,
            channel_count=config.input_channels,
        )

    def device_options(self) -> Dict[str, str]:
        """ffmpeg device options. Only rate and channel count are device-level settings."""
        return {
            "sample_rate": str(self.sample_rate),
            "channels": str(self.channel_count),
        }


class GatedAudioTrack(MediaStreamTrack):
    """
    Audio track that forwards frames from a source track.

    While `enabled` is False the frames keep flowing but carry silence, so the
    peer connection never sees the track end.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, enabled: bool = True):
        super().__init__()
        self._source = source
        self.enabled = enabled

    async def recv(self):
        frame = await self._source.recv()
        if not self.enabled:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class LocalAudioStream:
    """The acquired local stream: one or more gated audio tracks."""

    def __init__(self, tracks: List[Any], player: Any = None):
        self._tracks = list(tracks)
        self._player = player
        self.stopped = False

    @property
    def tracks(self) -> List[Any]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[Any]:
        return [t for t in self._tracks if getattr(t, "kind", None) == "audio"]

    def set_enabled(self, enabled: bool) -> None:
        for track in self.get_audio_tracks():
            track.enabled = enabled

    def stop(self) -> None:
        """Stop every track once. Later calls are no-ops."""
        if self.stopped:
            return
        self.stopped = True
        for track in self._tracks:
            track.stop()
        logger.debug("Local audio stream stopped", track_count=len(self._tracks))


class MediaCapture:
    """Acquires the local microphone through an ffmpeg input device."""

    def __init__(
        self,
        device: str = "default",
        device_format: Optional[str] = "pulse",
        constraints: Optional[AudioConstraints] = None,
        *,
        player_factory: Callable[..., Any] = MediaPlayer,
    ):
        self.device = device
        self.device_format = device_format
        self.constraints = constraints or AudioConstraints()
        self._player_factory = player_factory

    async def acquire(self) -> LocalAudioStream:
        """
        Open the input device and return its audio as a LocalAudioStream.

        Raises MediaAccessDenied if the device cannot be opened or has no audio.
        """
        logger.debug(
            "Acquiring microphone",
            device=self.device,
            device_format=self.device_format,
            sample_rate=self.constraints.sample_rate,
            channel_count=self.constraints.channel_count,
            echo_cancellation=self.constraints.echo_cancellation,
            noise_suppression=self.constraints.noise_suppression,
            auto_gain_control=self.constraints.auto_gain_control,
        )
        try:
            player = self._player_factory(
                self.device,
                format=self.device_format,
                options=self.constraints.device_options(),
            )
        except Exception as e:
            logger.warning(
                "Microphone unavailable",
                device=self.device,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise MediaAccessDenied(f"cannot open input device {self.device!r}", detail=str(e)) from e

        source = getattr(player, "audio", None)
        if source is None:
            raise MediaAccessDenied(f"input device {self.device!r} has no audio track")

        logger.info("Microphone acquired", device=self.device)
        return LocalAudioStream([GatedAudioTrack(source)], player=player)


class PlaybackSink:
    """
    Remote audio playback.

    Writes the remote track to an ffmpeg output device, or discards it when no
    device is configured. Muting silences the frames instead of detaching.
    """

    def __init__(
        self,
        device: Optional[str] = None,
        device_format: Optional[str] = None,
        *,
        recorder_factory: Optional[Callable[[], Any]] = None,
    ):
        self.device = device
        self.device_format = device_format
        self._recorder_factory = recorder_factory or self._default_recorder
        self._recorder: Any = None
        self._track: Optional[GatedAudioTrack] = None
        self._muted = False

    def _default_recorder(self) -> Any:
        if self.device:
            return MediaRecorder(self.device, format=self.device_format)
        return MediaBlackhole()

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def attached(self) -> bool:
        return self._recorder is not None

    def set_muted(self, muted: bool) -> None:
        self._muted = muted
        if self._track is not None:
            self._track.enabled = not muted

    async def attach(self, track: MediaStreamTrack) -> None:
        """Start playing a remote audio track. A second track replaces the first."""
        if self._recorder is not None:
            await self.release()
        gated = GatedAudioTrack(track, enabled=not self._muted)
        recorder = self._recorder_factory()
        recorder.addTrack(gated)
        self._track = gated
        self._recorder = recorder
        await recorder.start()
        logger.debug("Remote playback started", device=self.device or "blackhole")

    async def release(self) -> None:
        """Stop playback. Safe to call repeatedly."""
        recorder, self._recorder = self._recorder, None
        self._track = None
        if recorder is None:
            return
        await recorder.stop()
        logger.debug("Remote playback released")
