"""OpenAI bridge — chat completion, speech synthesis, image generation, transcription.

Models and voice come from forge_config.json (auto-reloads on file change).
The API key is read from OPENAI_API_KEY when the client is first built.
"""

import base64
import copy
import json
import logging
import os
import threading
import time

from openai import OpenAI

log = logging.getLogger("forge")

# Thread-local storage for last usage metadata (populated after each chat call)
_tls = threading.local()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(BASE_DIR, "forge_config.json")

DEFAULT_CONFIG = {
    "chat": {"model": "gpt-4-0125-preview"},
    "speech": {"model": "tts-1", "voice": "fable"},
    "image": {"enabled": True, "model": "dall-e-3", "size": "1024x1024"},
    "transcription": {"model": "whisper-1"},
    "timeout": 120,
    "trace": {"enabled": True, "retention_days": 14},
}


class MissingCredentialError(RuntimeError):
    """Raised when OPENAI_API_KEY is not set."""


# ---------------------------------------------------------------------------
# Config (auto-reload on file change)
# ---------------------------------------------------------------------------

_config_cache: dict | None = None
_config_mtime: float = 0


def _merge(defaults: dict, overrides: dict) -> dict:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_config() -> dict:
    global _config_cache, _config_mtime
    try:
        mtime = os.path.getmtime(CONFIG_PATH)
        if _config_cache is None or mtime != _config_mtime:
            with open(CONFIG_PATH, "r", encoding="utf-8") as f:
                _config_cache = _merge(DEFAULT_CONFIG, json.load(f))
            _config_mtime = mtime
            log.info("openai_bridge: loaded config — chat_model=%s", _config_cache["chat"]["model"])
    except (OSError, json.JSONDecodeError) as e:
        if _config_cache is None:
            log.info("openai_bridge: using default config (%s)", e)
            _config_cache = copy.deepcopy(DEFAULT_CONFIG)
    return _config_cache


def save_config(cfg: dict):
    """Persist config overrides and drop the cache so the next read reloads."""
    global _config_cache
    with open(CONFIG_PATH, "w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2, ensure_ascii=False)
    _config_cache = None


def read_config_file() -> dict:
    """Raw on-disk overrides (no defaults merged)."""
    try:
        with open(CONFIG_PATH, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError):
        return {}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

_client: OpenAI | None = None
_client_lock = threading.Lock()


def has_credential() -> bool:
    return bool(os.environ.get("OPENAI_API_KEY", "").strip())


def get_client() -> OpenAI:
    """Lazy-build the OpenAI client (singleton, thread-safe)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                api_key = os.environ.get("OPENAI_API_KEY", "").strip()
                if not api_key:
                    raise MissingCredentialError("OPENAI_API_KEY is not set")
                _client = OpenAI(api_key=api_key, timeout=get_config().get("timeout", 120))
                log.info("openai_bridge: client ready")
    return _client


def reset_client():
    global _client
    with _client_lock:
        _client = None


def get_last_usage() -> dict | None:
    """Return usage metadata from the most recent chat call on this thread.

    Keys: model, prompt_tokens, output_tokens, total_tokens.
    """
    return getattr(_tls, "last_usage", None)


def _capture_usage(model: str, response):
    _tls.last_usage = None
    usage = getattr(response, "usage", None)
    if usage is None:
        return
    _tls.last_usage = {
        "model": model,
        "prompt_tokens": getattr(usage, "prompt_tokens", 0),
        "output_tokens": getattr(usage, "completion_tokens", 0),
        "total_tokens": getattr(usage, "total_tokens", 0),
    }


# ---------------------------------------------------------------------------
# Chat completion
# ---------------------------------------------------------------------------

def call_chat(messages: list[dict]) -> str:
    """Send the full message list (system prompt included). Returns reply text."""
    model = get_config()["chat"]["model"]
    log.info("    openai_bridge: chat model=%s messages=%d", model, len(messages))
    t0 = time.time()

    response = get_client().chat.completions.create(model=model, messages=messages)
    _capture_usage(model, response)

    text = response.choices[0].message.content or ""
    log.info("    openai_bridge: chat OK in %.1fs response_len=%d", time.time() - t0, len(text))
    return text


# ---------------------------------------------------------------------------
# Speech synthesis
# ---------------------------------------------------------------------------

def audio_data_uri(audio: bytes, mime: str = "audio/mp3") -> str:
    return f"data:{mime};base64,{base64.b64encode(audio).decode('ascii')}"


def synthesize_speech(text: str) -> str:
    """Return the spoken reply as an ``audio/mp3`` data URI."""
    s = get_config()["speech"]
    log.info("    openai_bridge: speech model=%s voice=%s input_len=%d", s["model"], s["voice"], len(text))
    t0 = time.time()

    response = get_client().audio.speech.create(model=s["model"], voice=s["voice"], input=text)
    audio = response.content

    log.info("    openai_bridge: speech OK in %.1fs bytes=%d", time.time() - t0, len(audio))
    return audio_data_uri(audio)


# ---------------------------------------------------------------------------
# Image generation
# ---------------------------------------------------------------------------

def generate_image(prompt: str) -> str:
    """Generate one image and return its URL."""
    i = get_config()["image"]
    log.info("    openai_bridge: image model=%s prompt=%s", i["model"], prompt[:80])
    t0 = time.time()

    response = get_client().images.generate(model=i["model"], prompt=prompt, size=i["size"], n=1)
    url = response.data[0].url

    log.info("    openai_bridge: image OK in %.1fs", time.time() - t0)
    return url


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------

_AUDIO_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/webm": "webm",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/ogg": "ogg",
}


def transcribe_audio(audio: bytes, mime: str = "audio/wav") -> str:
    """Transcribe a short recording. Returns the recognized text (may be empty)."""
    model = get_config()["transcription"]["model"]
    ext = _AUDIO_EXTENSIONS.get(mime.split(";")[0].strip().lower(), "wav")
    log.info("    openai_bridge: transcribe model=%s bytes=%d", model, len(audio))
    t0 = time.time()

    result = get_client().audio.transcriptions.create(model=model, file=(f"speech.{ext}", audio))
    text = (result.text or "").strip()

    log.info("    openai_bridge: transcribe OK in %.1fs text_len=%d", time.time() - t0, len(text))
    return text
