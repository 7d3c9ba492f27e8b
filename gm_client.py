"""HTTP client for the GM Forge server."""

import json
import logging
import time
import urllib.error
import urllib.request

log = logging.getLogger("forge")

DEFAULT_SERVER = "http://127.0.0.1:5051"
CLIENT_TIMEOUT = 300  # seconds (chat + image + speech run back to back)


class ChatRequestError(Exception):
    """Raised when the server reports a failure or cannot be reached."""

    def __init__(self, error: str, details: str = "", status: int | None = None):
        super().__init__(f"{error}: {details}" if details else error)
        self.error = error
        self.details = details
        self.status = status


class ForgeClient:
    def __init__(self, base_url: str = DEFAULT_SERVER, timeout: float = CLIENT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, data: bytes, content_type: str) -> dict:
        req = urllib.request.Request(
            self.base_url + path, data=data,
            headers={"Content-Type": content_type},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            body_text = e.read().decode("utf-8", errors="replace")
            try:
                body = json.loads(body_text)
            except json.JSONDecodeError:
                body = {}
            raise ChatRequestError(
                body.get("error", f"HTTP {e.code}"),
                body.get("details", body_text[:300] if not body else ""),
                status=e.code,
            ) from e
        except urllib.error.URLError as e:
            raise ChatRequestError("Server unreachable", str(e.reason)) from e
        except json.JSONDecodeError as e:
            raise ChatRequestError("Malformed server response", str(e)) from e

    def chat(self, messages: list[dict]) -> dict:
        """POST the transcript to /api/chat. Returns {text, audio?, image?}."""
        t0 = time.time()
        payload = json.dumps({"messages": messages}).encode("utf-8")
        result = self._post("/api/chat", payload, "application/json")
        log.info("gm_client: chat OK in %.1fs", time.time() - t0)
        return result

    def transcribe(self, audio: bytes, mime: str = "audio/wav") -> str:
        result = self._post("/api/transcribe", audio, mime)
        return result.get("text", "")
