"""Thread-safe in-memory runtime configuration limited to known keys.

Shared by the relay app, signaling selector and call sessions.

Usage::

    from roomcall.config import CallConfig

    config = CallConfig.from_env()          # ROOMCALL_RELAY_URL=... etc.
    config["reconnect_max_attempts"] = 3    # set a value
    snap = config.snapshot()                # full config as plain dict
"""

import logging
import os
import threading

log = logging.getLogger("roomcall.config")

ENV_PREFIX = "ROOMCALL_"

_DEFAULTS = {
    # Signaling endpoints
    "relay_url": "ws://localhost:3001/socket",
    "mailbox_url": "http://localhost:3001",
    "socket_path": "/socket",
    # Transport selection / reconnection
    "connect_timeout": 5.0,
    "join_timeout": 5.0,
    "reconnect_max_attempts": 5,
    "reconnect_base_delay": 2.0,
    "reconnect_max_delay": 30.0,
    # Store-and-forward transport
    "mailbox_poll_wait": 20.0,
    "mailbox_poll_interval": 1.0,
    "mailbox_lease": 60.0,
    # Call session
    "offer_wait_timeout": 30.0,
    "trickle_local_candidates": True,
    "ice_restart_attempts": 1,
    "ice_restart_timeout": 10.0,
    # Capture devices
    "audio_device": "default",
    "audio_format": "pulse",
    "video_device": "/dev/video0",
    "video_format": "v4l2",
    # Ring channel
    "ring_poll_interval": 2.0,
}


def _coerce(key: str, raw: str):
    default = _DEFAULTS[key]
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw




def _known(key: str) -> str:
    if key not in _DEFAULTS:
        raise KeyError(f"Unknown config key: {key!r}")
    return key


def _checked(key: str, value):
    default = _DEFAULTS[key]
    if isinstance(default, bool):
        ok = isinstance(value, bool)
    elif isinstance(default, float):
        # Whole numbers are fine for timeouts and delays.
        if isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        ok = isinstance(value, float)
    elif isinstance(default, int):
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, str)
    if not ok:
        raise TypeError(f"{key} expects {type(default).__name__}, got {type(value).__name__}")
    return value


class CallConfig:
    """Known-keys config store guarded by a lock.

    Every write is checked against the type of the key's default, and a
    patch is validated as a whole before any of it is applied.
    """

    KNOWN_KEYS = frozenset(_DEFAULTS)

    def __init__(self, overrides: dict | None = None):
        self._data = dict(_DEFAULTS)
        self._lock = threading.Lock()
        if overrides:
            self.update(overrides)

    @classmethod
    def from_env(cls, environ=None, prefix: str = ENV_PREFIX) -> "CallConfig":
        """Build a config from ROOMCALL_<KEY> environment variables."""
        environ = os.environ if environ is None else environ
        overrides = {}
        for key in _DEFAULTS:
            raw = environ.get(prefix + key.upper())
            if raw is None:
                continue
            try:
                overrides[key] = _coerce(key, raw)
            except ValueError:
                log.warning("Ignoring %s%s=%r: expected %s",
                            prefix, key.upper(), raw, type(_DEFAULTS[key]).__name__)
        return cls(overrides)

    def __getitem__(self, key: str):
        with self._lock:
            return self._data[_known(key)]

    def __setitem__(self, key: str, value):
        self.update({key: value})

    def __contains__(self, key) -> bool:
        return key in _DEFAULTS

    def get(self, key: str, default=None):
        if key not in _DEFAULTS:
            return default
        return self[key]

    def update(self, patch: dict) -> dict:
        """Validate all of `patch`, then apply it in one step.

        Raises KeyError for an unknown key and TypeError for a value whose
        type does not match the default. Returns the resulting snapshot.
        """
        checked = {_known(key): _checked(key, value) for key, value in patch.items()}
        with self._lock:
            self._data.update(checked)
            return dict(self._data)

    def snapshot(self) -> dict:
        with self._lock:
            return dict(self._data)
