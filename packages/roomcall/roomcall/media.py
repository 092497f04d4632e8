"""Local media acquisition: the only seam into the capture hardware.

Codec work stays inside aiortc/PyAV; this module only hands out tracks,
wraps them so they can be muted, and stops them on release.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from aiortc import MediaStreamTrack

from roomcall.config import CallConfig
from roomcall.errors import DeviceNotFound, PermissionDenied
from roomcall.tracks import FlatVideoTrack, SwitchableTrack, ToneAudioTrack

log = logging.getLogger("roomcall.media")


class MediaKind(str, Enum):
    AUDIO = "audio"
    AUDIO_VIDEO = "audio+video"

    @property
    def has_video(self) -> bool:
        return self is MediaKind.AUDIO_VIDEO


@dataclass
class MediaConstraints:
    audio: bool = True
    video: bool = False
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    width: int = 640
    height: int = 480
    facing_mode: str = "user"

    @classmethod
    def for_kind(cls, kind: MediaKind) -> "MediaConstraints":
        return cls(audio=True, video=kind.has_video)

    @classmethod
    def video_only(cls) -> "MediaConstraints":
        return cls(audio=False, video=True)


@dataclass
class MediaStream:
    """An ordered set of tracks, local or remote."""
    tracks: list = field(default_factory=list)

    @property
    def audio_tracks(self) -> list:
        return [t for t in self.tracks if t.kind == "audio"]

    @property
    def video_tracks(self) -> list:
        return [t for t in self.tracks if t.kind == "video"]

    def add_track(self, track):
        self.tracks.append(track)

    def replace_kind(self, track):
        """Replace any track of the same kind (remote streams keep one per kind)."""
        self.tracks = [t for t in self.tracks if t.kind != track.kind]
        self.tracks.append(track)

    def set_enabled(self, kind: str, enabled: bool) -> bool:
        """Mute/unmute every switchable track of `kind`. Returns True if any matched."""
        matched = False
        for t in self.tracks:
            if t.kind == kind and isinstance(t, SwitchableTrack):
                t.enabled = enabled
                matched = True
        return matched

    def is_enabled(self, kind: str) -> bool:
        return any(getattr(t, "enabled", True) for t in self.tracks if t.kind == kind)

    def stop(self):
        """Stop every track. Safe to call more than once."""
        for t in self.tracks:
            if t.readyState != "ended":
                t.stop()

    @property
    def live(self) -> bool:
        return any(t.readyState == "live" for t in self.tracks)


class MediaDevices(ABC):
    """Hands out capture tracks. Raises PermissionDenied or DeviceNotFound."""

    @abstractmethod
    async def get_user_media(self, constraints: MediaConstraints) -> MediaStream:
        ...


class PlayerMediaDevices(MediaDevices):
    """Capture through aiortc's MediaPlayer (PulseAudio / V4L2 by default)."""

    def __init__(self, config=None):
        self._config = config or CallConfig()

    def _open(self, device: str, fmt: str, options: dict | None = None):
        from aiortc.contrib.media import MediaPlayer

        try:
            return MediaPlayer(device, format=fmt, options=options or {})
        except PermissionError as e:
            raise PermissionDenied() from e
        except (FileNotFoundError, OSError) as e:
            log.error("Capture device %s (%s) unavailable: %s", device, fmt, e)
            raise DeviceNotFound() from e

    async def get_user_media(self, constraints: MediaConstraints) -> MediaStream:
        stream = MediaStream()
        try:
            if constraints.audio:
                player = self._open(self._config["audio_device"], self._config["audio_format"])
                if player.audio is None:
                    raise DeviceNotFound("No microphone found on this device.")
                stream.add_track(SwitchableTrack(player.audio))
            if constraints.video:
                size = f"{constraints.width}x{constraints.height}"
                player = self._open(
                    self._config["video_device"],
                    self._config["video_format"],
                    {"video_size": size},
                )
                if player.video is None:
                    raise DeviceNotFound("No camera found on this device.")
                stream.add_track(SwitchableTrack(player.video))
        except Exception:
            stream.stop()
            raise

        log.info("Acquired local media: %s",
                 ", ".join(t.kind for t in stream.tracks))
        return stream


class SyntheticMediaDevices(MediaDevices):
    """Generated tracks for headless peers and tests.

    `deny=True` simulates the user refusing access; `available` limits which
    kinds of device exist.
    """

    def __init__(self, deny: bool = False, available=("audio", "video"),
                 tone_hz: float = 0.0):
        self.deny = deny
        self.available = set(available)
        self.tone_hz = tone_hz
        self.issued: list[MediaStreamTrack] = []

    async def get_user_media(self, constraints: MediaConstraints) -> MediaStream:
        if self.deny:
            raise PermissionDenied()
        wanted = [k for k, on in (("audio", constraints.audio), ("video", constraints.video)) if on]
        missing = [k for k in wanted if k not in self.available]
        if missing:
            raise DeviceNotFound(f"No {' or '.join(missing)} device found.")

        stream = MediaStream()
        if constraints.audio:
            stream.add_track(SwitchableTrack(ToneAudioTrack(frequency=self.tone_hz)))
        if constraints.video:
            stream.add_track(SwitchableTrack(FlatVideoTrack(constraints.width, constraints.height)))
        self.issued.extend(stream.tracks)
        return stream

    @property
    def live_tracks(self) -> list:
        return [t for t in self.issued if t.readyState == "live"]
