"""Speech-to-text capture in continuous, interim-results mode.

Every recognition event carries all segments heard so far; their
concatenation replaces the input buffer, so the draft always shows the whole
utterance. An error or the natural end of speech stops listening; nothing
restarts it automatically.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from typing import Callable

log = logging.getLogger("forge")

CHUNK_SECONDS = 4
STOP_GRACE_SECONDS = 15  # transcription of the last chunk after stop()


class SpeechCapture:
    """Engine-agnostic capture state.

    The engine calls ``handle_result``, ``handle_error`` and ``handle_end``.
    """

    def __init__(self, set_input_text: Callable[[str], None], engine=None):
        self.set_input_text = set_input_text
        self.engine = engine
        self.is_listening = False
        self.last_error: str | None = None

    @property
    def has_microphone(self) -> bool:
        return self.engine is not None and self.engine.available()

    def toggle_listening(self):
        if self.engine is None:
            log.error("speech_capture: no recognition engine")
            return
        if self.is_listening:
            self.is_listening = False
            self.engine.stop()
        else:
            self.is_listening = True
            self.last_error = None
            self.engine.start(self)

    def handle_result(self, segments: list[str]):
        self.set_input_text("".join(segments))

    def handle_error(self, error):
        log.error("speech_capture: recognition error — %s", error)
        self.last_error = str(error)
        self.is_listening = False

    def handle_end(self):
        self.is_listening = False


# ---------------------------------------------------------------------------
# Engine: fixed-length chunks recorded by an external tool
# ---------------------------------------------------------------------------

def find_recorder(seconds: int, path: str) -> list[str] | None:
    if shutil.which("arecord"):
        return ["arecord", "-q", "-f", "S16_LE", "-r", "16000", "-c", "1", "-d", str(seconds), path]
    if shutil.which("rec"):
        return ["rec", "-q", "-c", "1", "-r", "16000", path, "trim", "0", str(seconds)]
    return None


class ChunkedRecorderEngine:
    """Records WAV chunks and transcribes each one with ``transcribe(bytes, mime)``.

    A chunk that transcribes to nothing is treated as the end of speech.
    Each ``start()`` runs its own loop with its own stop event; a loop that has
    been superseded by a newer ``start()`` drops whatever it was recording.
    ``stop()`` waits for the chunk in flight so its text reaches the capture.
    """

    def __init__(self, transcribe: Callable[[bytes, str], str], chunk_seconds: int = CHUNK_SECONDS,
                 run=subprocess.run):
        self.transcribe = transcribe
        self.chunk_seconds = chunk_seconds
        self._run = run
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def available(self) -> bool:
        return find_recorder(self.chunk_seconds, "probe.wav") is not None

    def start(self, capture: SpeechCapture):
        stop_event = threading.Event()
        thread = threading.Thread(target=self._loop, args=(capture, stop_event), daemon=True)
        with self._lock:
            self._stop.set()
            self._stop, self._thread = stop_event, thread
        thread.start()

    def stop(self, timeout: float | None = None):
        """Signal the current loop and wait for its in-flight chunk."""
        with self._lock:
            self._stop.set()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(self.chunk_seconds + STOP_GRACE_SECONDS if timeout is None else timeout)
            if thread.is_alive():
                log.warning("speech_capture: recorder still busy after stop")

    def _is_current(self, thread: threading.Thread) -> bool:
        with self._lock:
            return self._thread is thread

    def _record_chunk(self) -> bytes:
        fd, path = tempfile.mkstemp(prefix="forge_mic_", suffix=".wav")
        os.close(fd)
        try:
            cmd = find_recorder(self.chunk_seconds, path)
            if cmd is None:
                raise RuntimeError("no recorder found (install alsa-utils or sox)")
            self._run(cmd, check=True, timeout=self.chunk_seconds + 10)
            with open(path, "rb") as f:
                return f.read()
        finally:
            os.remove(path)

    def _loop(self, capture: SpeechCapture, stop_event: threading.Event):
        me = threading.current_thread()
        segments: list[str] = []
        try:
            while not stop_event.is_set():
                audio = self._record_chunk()
                text = self.transcribe(audio, "audio/wav").strip()
                if not self._is_current(me):
                    return
                if not text:
                    break
                segments.append(text if not segments else " " + text)
                capture.handle_result(list(segments))
        except Exception as e:
            if self._is_current(me):
                capture.handle_error(e)
            return
        if self._is_current(me):
            capture.handle_end()
