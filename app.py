"""Flask backend for GM Forge — chat orchestration, speech and illustrations."""

import logging
import os
import time

from dotenv import load_dotenv
from flask import Flask, jsonify, request

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    format="[%(asctime)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    level=logging.INFO,
)
log = logging.getLogger("forge")

load_dotenv()

import llm_trace
from file_blocks import extract_documents, speech_text
from image_gen import illustrate
from openai_bridge import (
    call_chat,
    get_config,
    get_last_usage,
    has_credential,
    read_config_file,
    save_config,
    synthesize_speech,
    transcribe_audio,
)

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, "data")
INSTRUCTIONS_PATH = os.environ.get("FORGE_INSTRUCTIONS", os.path.join(BASE_DIR, "instructions.md"))


# ---------------------------------------------------------------------------
# Helpers: turn orchestration
# ---------------------------------------------------------------------------

def _load_instructions() -> str:
    """Read the GM system prompt. Loaded on every request so edits apply immediately."""
    with open(INSTRUCTIONS_PATH, "r", encoding="utf-8") as f:
        return f.read()


def _build_chat_messages(messages: list[dict], instructions: str) -> list[dict]:
    return [{"role": "system", "content": instructions}] + [
        {"role": m["role"], "content": m["content"]} for m in messages
    ]


def _trace(turn_id: str, stage: str, payload, **tags):
    t = get_config().get("trace", {})
    if not t.get("enabled", True):
        return
    llm_trace.write_trace(
        data_dir=DATA_DIR,
        turn_id=turn_id,
        stage=stage,
        payload=payload,
        tags=tags,
        source="/api/chat",
        retention_days=t.get("retention_days", 14),
    )


def _run_turn(messages: list[dict], turn_id: str) -> dict:
    """Chat → optional illustration → speech. Any failure propagates to the caller."""
    instructions = _load_instructions()
    chat_messages = _build_chat_messages(messages, instructions)
    _trace(turn_id, "chat_request", {"messages": messages})

    # 1. Chat completion
    t0 = time.time()
    text = call_chat(chat_messages)
    log.info("  chat_call: %.1fs", time.time() - t0)
    _trace(turn_id, "chat_response", {"text": text, "usage": get_last_usage()})

    result = {"text": text}

    # 2. Illustration for embedded documents
    _, documents = extract_documents(text)
    if documents:
        t0 = time.time()
        image_url = illustrate(documents)
        if image_url:
            result["image"] = image_url
            _trace(turn_id, "image", {"document": documents[0].name, "url": image_url})
        log.info("  image_call: %.1fs documents=%d", time.time() - t0, len(documents))

    # 3. Speech (markers and code fences are not read aloud)
    spoken = speech_text(text)
    if spoken:
        t0 = time.time()
        result["audio"] = synthesize_speech(spoken)
        log.info("  speech_call: %.1fs", time.time() - t0)
        _trace(turn_id, "speech", {"input_len": len(spoken)})
    else:
        log.info("  speech_call: skipped (nothing to speak)")

    return result


# ---------------------------------------------------------------------------
# Flask App
# ---------------------------------------------------------------------------
app = Flask(__name__)


@app.route("/api/chat", methods=["POST"])
def api_chat():
    """Run one GM turn for the posted transcript."""
    t_start = time.time()
    turn_id = llm_trace.new_turn_id()
    try:
        body = request.get_json(force=True)
        messages = body["messages"]
        log.info("/api/chat START  turn=%s messages=%d", turn_id, len(messages))
        result = _run_turn(messages, turn_id)
    except Exception as e:
        log.exception("/api/chat FAILED turn=%s", turn_id)
        _trace(turn_id, "error", {"error": str(e), "type": type(e).__name__})
        return jsonify({"error": "Chat failed", "details": str(e)}), 500

    log.info("/api/chat DONE   turn=%s total=%.1fs", turn_id, time.time() - t_start)
    return jsonify(result)


@app.route("/api/transcribe", methods=["POST"])
def api_transcribe():
    """Transcribe a raw audio body (Content-Type gives the audio format)."""
    audio = request.get_data()
    mime = request.content_type or "audio/wav"
    try:
        if not audio:
            raise ValueError("empty audio body")
        text = transcribe_audio(audio, mime)
    except Exception as e:
        log.exception("/api/transcribe FAILED")
        return jsonify({"error": "Transcription failed", "details": str(e)}), 500
    return jsonify({"text": text})


# ---------------------------------------------------------------------------
# Config API (model / voice switcher)
# ---------------------------------------------------------------------------

@app.route("/api/config")
def api_config_get():
    """Return sanitized config (the API key is never exposed)."""
    cfg = get_config()
    return jsonify({
        "ok": True,
        "chat": {"model": cfg["chat"]["model"]},
        "speech": {"model": cfg["speech"]["model"], "voice": cfg["speech"]["voice"]},
        "image": {"enabled": bool(cfg["image"].get("enabled", True)), "model": cfg["image"]["model"]},
        "transcription": {"model": cfg["transcription"]["model"]},
        "has_credential": has_credential(),
    })


_CONFIG_EDITABLE = {
    "chat": ("model",),
    "speech": ("model", "voice"),
    "image": ("enabled", "model", "size"),
    "transcription": ("model",),
}


@app.route("/api/config", methods=["POST"])
def api_config_set():
    """Update models, voice or the image toggle. Writes forge_config.json."""
    data = request.get_json(force=True)
    cfg = read_config_file()

    for section, keys in _CONFIG_EDITABLE.items():
        if section in data and isinstance(data[section], dict):
            cfg.setdefault(section, {})
            for key in keys:
                if key in data[section]:
                    cfg[section][key] = data[section][key]

    save_config(cfg)
    log.info("api_config_set: updated — chat_model=%s voice=%s",
             get_config()["chat"]["model"], get_config()["speech"]["voice"])
    return jsonify({"ok": True})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    os.makedirs(DATA_DIR, exist_ok=True)
    app.run(debug=True, host="0.0.0.0", port=int(os.environ.get("FORGE_PORT", 5051)))
