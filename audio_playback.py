"""Audio playback of ``data:`` URIs through an external command-line player.

``on_ended`` fires when the player process exits (end of audio or ``stop()``),
never on a timer.
"""

import base64
import binascii
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from typing import Callable

log = logging.getLogger("forge")

# Tried in order; the audio file path is appended.
PLAYERS = (
    ("ffplay", ["-nodisp", "-autoexit", "-loglevel", "quiet"]),
    ("mpg123", ["-q"]),
    ("mpv", ["--no-video", "--really-quiet"]),
    ("afplay", []),
)

_MIME_EXTENSIONS = {"audio/mp3": ".mp3", "audio/mpeg": ".mp3", "audio/wav": ".wav", "audio/ogg": ".ogg"}


class PlaybackError(RuntimeError):
    """Raised when audio cannot be decoded or no player can be started."""


def find_player() -> list[str] | None:
    for name, args in PLAYERS:
        path = shutil.which(name)
        if path:
            return [path, *args]
    return None


def decode_data_uri(uri: str) -> tuple[str, bytes]:
    """Split ``data:<mime>;base64,<payload>`` into (mime, bytes)."""
    if not uri.startswith("data:") or "," not in uri:
        raise ValueError("not a data URI")
    header, payload = uri[5:].split(",", 1)
    parts = header.split(";")
    mime = parts[0] or "text/plain"
    if "base64" not in parts[1:]:
        raise ValueError("only base64 data URIs are supported")
    try:
        return mime, base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"bad base64 payload: {e}") from e


class AudioPlayback:
    def __init__(self, on_ended: Callable[[], None], player_cmd: list[str] | None = None,
                 popen=subprocess.Popen):
        self.on_ended = on_ended
        self.player_cmd = player_cmd if player_cmd is not None else find_player()
        self._popen = popen
        self._lock = threading.Lock()
        self._current = None

    @property
    def available(self) -> bool:
        return bool(self.player_cmd)

    @property
    def is_playing(self) -> bool:
        with self._lock:
            return self._current is not None

    def play(self, data_uri: str):
        """Start playback in the background. Replaces anything already playing."""
        if not self.player_cmd:
            raise PlaybackError("no audio player found (install ffmpeg, mpg123 or mpv)")
        try:
            mime, audio = decode_data_uri(data_uri)
        except ValueError as e:
            raise PlaybackError(str(e)) from e

        path = None
        try:
            fd, path = tempfile.mkstemp(prefix="forge_", suffix=_MIME_EXTENSIONS.get(mime, ".mp3"))
            with os.fdopen(fd, "wb") as f:
                f.write(audio)
        except OSError as e:
            if path and os.path.exists(path):
                os.remove(path)
            raise PlaybackError(f"could not write audio file: {e}") from e

        try:
            proc = self._popen(
                [*self.player_cmd, path],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            os.remove(path)
            raise PlaybackError(f"could not start player: {e}") from e

        with self._lock:
            previous, self._current = self._current, proc
        if previous is not None:
            previous.terminate()

        log.info("audio_playback: playing %d bytes (%s)", len(audio), mime)
        threading.Thread(target=self._watch, args=(proc, path), daemon=True).start()

    def _watch(self, proc, path: str):
        proc.wait()
        try:
            os.remove(path)
        except OSError:
            pass
        with self._lock:
            finished = self._current is proc
            if finished:
                self._current = None
        # A replaced process does not end the newer playback
        if finished:
            self.on_ended()

    def stop(self):
        with self._lock:
            proc = self._current
        if proc is not None:
            proc.terminate()
