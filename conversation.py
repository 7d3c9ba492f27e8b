"""Conversation controller — owns the transcript, turn status and document extraction.

All state changes go through the named transitions below. Each submitted
turn gets a fresh request id; a response or failure for an older id is
discarded so a late reply cannot corrupt the transcript.

Status flow::

    idle ──submit──▶ thinking ──receive──▶ speaking ──playback_ended──▶ idle
      │                 │          └─(no audio)──────────────────────▶ idle
      │                 └──fail──▶ error ──dismiss_error──▶ idle
      └──start_recording──▶ recording ──stop_recording──▶ idle
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from audio_playback import PlaybackError
from document_store import DocumentStore, InvalidDocumentName
from file_blocks import extract_documents

log = logging.getLogger("forge")


class Status(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    THINKING = "thinking"
    SPEAKING = "speaking"
    ERROR = "error"


@dataclass(frozen=True)
class Turn:
    request_id: int
    messages: list[dict]


class ConversationController:
    """Single-turn-at-a-time conversation state.

    ``transport(messages) -> dict`` performs the chat round trip.
    ``player.play(data_uri)`` starts audio; the player must call
    ``playback_ended()`` when the audio finishes.
    """

    def __init__(
        self,
        transport: Callable[[list[dict]], dict],
        store: DocumentStore,
        player=None,
        on_change: Callable[["ConversationController"], None] | None = None,
    ):
        self.transport = transport
        self.store = store
        self.player = player
        self.on_change = on_change

        self.status = Status.IDLE
        self.messages: list[dict] = []
        self.last_documents: list[str] = []
        self.last_image: str | None = None
        self.last_error: str | None = None

        self._request_id = 0
        self._lock = threading.RLock()

    # -- helpers ------------------------------------------------------------

    def _set_status(self, status: Status):
        if status != self.status:
            log.info("conversation: %s → %s", self.status.value, status.value)
        self.status = status
        if self.on_change:
            self.on_change(self)

    # -- transitions ----------------------------------------------------------

    def begin_turn(self, text: str) -> Turn | None:
        """Append the user message and enter ``thinking``. None when not idle or blank."""
        text = (text or "").strip()
        with self._lock:
            if self.status != Status.IDLE or not text:
                return None
            self.messages.append({"role": "user", "content": text})
            self._request_id += 1
            self.last_error = None
            turn = Turn(self._request_id, [dict(m) for m in self.messages])
            self._set_status(Status.THINKING)
            return turn

    def receive(self, request_id: int, response: dict) -> bool:
        """Apply a turn response. Returns False when it belongs to a superseded turn."""
        with self._lock:
            if request_id != self._request_id or self.status != Status.THINKING:
                log.info("conversation: dropping stale response for request %d", request_id)
                return False

            raw_text = response.get("text") or ""
            image = response.get("image") or None
            display_text, documents = extract_documents(raw_text)

            saved: list[str] = []
            for doc in documents:
                try:
                    self.store.save(doc.name, doc.body, background_image=image)
                    saved.append(doc.name)
                except InvalidDocumentName as e:
                    log.warning("conversation: skipped document %s — %s", doc.name, e)

            self.messages.append({"role": "assistant", "content": display_text})
            self.last_documents = saved
            self.last_image = image

            audio = response.get("audio")
            if not audio or self.player is None:
                self._set_status(Status.IDLE)
                return True

            self._set_status(Status.SPEAKING)
            try:
                self.player.play(audio)
            except PlaybackError as e:
                log.warning("conversation: playback unavailable — %s", e)
                self._set_status(Status.IDLE)
            return True

    def fail(self, request_id: int, error: Exception | str) -> bool:
        with self._lock:
            if request_id != self._request_id or self.status != Status.THINKING:
                log.info("conversation: dropping stale failure for request %d", request_id)
                return False
            self.last_error = str(error)
            log.error("conversation: turn %d failed — %s", request_id, error)
            self._set_status(Status.ERROR)
            return True

    def playback_ended(self):
        with self._lock:
            if self.status == Status.SPEAKING:
                self._set_status(Status.IDLE)

    def start_recording(self) -> bool:
        with self._lock:
            if self.status != Status.IDLE:
                return False
            self._set_status(Status.RECORDING)
            return True

    def stop_recording(self):
        with self._lock:
            if self.status == Status.RECORDING:
                self._set_status(Status.IDLE)

    def recording_failed(self, error: Exception | str):
        with self._lock:
            if self.status == Status.RECORDING:
                self.last_error = str(error)
                self._set_status(Status.ERROR)

    def dismiss_error(self):
        with self._lock:
            if self.status == Status.ERROR:
                self._set_status(Status.IDLE)

    # -- convenience ----------------------------------------------------------

    def submit(self, text: str) -> bool:
        """Run a whole turn synchronously. Returns True when a response was applied."""
        turn = self.begin_turn(text)
        if turn is None:
            return False
        try:
            response = self.transport(turn.messages)
        except Exception as e:
            self.fail(turn.request_id, e)
            return False
        return self.receive(turn.request_id, response)
