"""Tests for forge_cli.py — command dispatch and turn display.

The transport, player and microphone are fakes; input comes from a scripted list.
"""

import io

import pytest

from conftest import FAKE_AUDIO_URI, SHEET_REPLY
from conversation import ConversationController, Status
from forge_cli import ForgeCLI, parse_args
from gm_client import ChatRequestError
from speech_capture import SpeechCapture


class ScriptedInput:
    def __init__(self, lines):
        self.lines = list(lines)
        self.prompts = []

    def __call__(self, prompt=""):
        self.prompts.append(prompt)
        if not self.lines:
            raise EOFError
        return self.lines.pop(0)


class HeardEngine:
    """Recognition engine that 'hears' a fixed utterance as soon as it starts."""

    def __init__(self, segments=None, error=None):
        self.segments = segments or []
        self.error = error

    def available(self):
        return True

    def start(self, capture):
        if self.error:
            capture.handle_error(self.error)
            return
        capture.handle_result(self.segments)
        capture.handle_end()

    def stop(self):
        pass


@pytest.fixture
def replies():
    return []


@pytest.fixture
def controller(store, replies):
    def transport(messages):
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply
    return ConversationController(transport, store)


def _cli(controller, store, lines=(), **kw):
    out = io.StringIO()
    cli = ForgeCLI(controller, store, input_fn=ScriptedInput(lines), out=out, **kw)
    return cli, out


# ===================================================================
# Turns
# ===================================================================


class TestTurns:
    def test_plain_turn_printed(self, controller, store, replies):
        replies.append({"text": "The door creaks open."})
        cli, out = _cli(controller, store)
        cli.handle_line("I push the door")
        assert "The door creaks open." in out.getvalue()
        assert controller.status == Status.IDLE
        assert controller.messages[0] == {"role": "user", "content": "I push the door"}

    def test_document_saved_and_announced(self, controller, store, replies):
        replies.append({"text": SHEET_REPLY, "image": "https://img/sheet.png"})
        cli, out = _cli(controller, store)
        cli.handle_line("Show me the parchment")
        text = out.getvalue()
        assert "saved document: sheet.md" in text
        assert "illustration: https://img/sheet.png" in text
        assert "```" not in text
        assert store.load("sheet.md").content == "Hello"

    def test_failure_reported_and_recovered(self, controller, store, replies):
        replies.append(ChatRequestError("Chat failed", "rate limited", status=500))
        cli, out = _cli(controller, store)
        cli.handle_line("attack")
        assert "Something went wrong: Chat failed: rate limited" in out.getvalue()
        assert controller.status == Status.IDLE

    def test_blocked_while_speaking(self, controller, store, replies, player):
        controller.player = player
        replies.append({"text": "Listen.", "audio": FAKE_AUDIO_URI})
        cli, out = _cli(controller, store)
        cli.handle_line("hello")
        assert controller.status == Status.SPEAKING
        cli.handle_line("hello again")
        assert "still speaking" in out.getvalue()
        assert len(controller.messages) == 2


# ===================================================================
# Document commands
# ===================================================================


class TestDocumentCommands:
    def test_files_empty_and_listed(self, controller, store):
        cli, out = _cli(controller, store)
        cli.handle_line("/files")
        assert "No documents yet." in out.getvalue()
        store.save("b.md", "B")
        store.save("a.md", "A")
        cli.handle_line("/files")
        assert out.getvalue().index("a.md") < out.getvalue().index("b.md")

    def test_open(self, controller, store):
        store.save("notes.md", "# Notes\nThe key is under the mat.", background_image="https://img/n.png")
        cli, out = _cli(controller, store)
        cli.handle_line("/open notes.md")
        assert "The key is under the mat." in out.getvalue()
        assert "https://img/n.png" in out.getvalue()

    def test_open_missing(self, controller, store):
        cli, out = _cli(controller, store)
        cli.handle_line("/open ghost.md")
        assert "No document named ghost.md." in out.getvalue()

    def test_open_without_name(self, controller, store):
        cli, out = _cli(controller, store)
        cli.handle_line("/open")
        assert "Which document?" in out.getvalue()

    def test_export(self, controller, store, tmp_path):
        store.save("map.md", "A. Gatehouse")
        target = tmp_path / "map_copy.md"
        cli, out = _cli(controller, store)
        cli.handle_line(f"/export map.md {target}")
        assert target.read_text(encoding="utf-8") == "A. Gatehouse"

    def test_delete(self, controller, store):
        store.save("old.md", "x")
        cli, out = _cli(controller, store)
        cli.handle_line("/delete old.md")
        assert store.load("old.md") is None
        cli.handle_line("/delete old.md")
        assert "No document named old.md." in out.getvalue()

    def test_edit_uses_editor(self, controller, store, monkeypatch, tmp_path):
        store.save("sheet.md", "HP 10")

        def fake_run(cmd, check):
            with open(cmd[1], "w", encoding="utf-8") as f:
                f.write("HP 7")
        monkeypatch.setattr("forge_cli.subprocess.run", fake_run)
        monkeypatch.setenv("EDITOR", "fake-editor")

        cli, out = _cli(controller, store)
        cli.handle_line("/edit sheet.md")
        assert store.load("sheet.md").content == "HP 7"
        assert "Saved sheet.md." in out.getvalue()

    def test_unknown_command(self, controller, store):
        cli, out = _cli(controller, store)
        cli.handle_line("/dance")
        assert "Unknown command /dance" in out.getvalue()

    def test_copy_to_clipboard(self, controller, store, monkeypatch):
        store.save("sheet.md", "# Aria\nHP 12")
        copied = []
        monkeypatch.setattr("forge_cli.shutil.which", lambda name: "/usr/bin/xclip" if name == "xclip" else None)
        monkeypatch.setattr("forge_cli.subprocess.run",
                            lambda cmd, input, check, timeout: copied.append((cmd, input)))

        cli, out = _cli(controller, store)
        cli.handle_line("/copy sheet.md")
        assert copied == [(["/usr/bin/xclip", "-selection", "clipboard"], "# Aria\nHP 12".encode("utf-8"))]
        assert "Copied sheet.md to the clipboard." in out.getvalue()

    def test_copy_without_clipboard_tool(self, controller, store, monkeypatch):
        store.save("sheet.md", "x")
        monkeypatch.setattr("forge_cli.shutil.which", lambda name: None)
        cli, out = _cli(controller, store)
        cli.handle_line("/copy sheet.md")
        assert "No clipboard tool found" in out.getvalue()

    def test_copy_missing_document(self, controller, store):
        cli, out = _cli(controller, store)
        cli.handle_line("/copy ghost.md")
        assert "No document named ghost.md." in out.getvalue()


# ===================================================================
# Mic / loop
# ===================================================================


class TestMicAndLoop:
    def test_mic_transcript_sent(self, controller, store, replies):
        replies.append({"text": "The guard nods."})
        cli, out = _cli(controller, store, lines=["", "y"])
        cli.capture = SpeechCapture(cli.set_draft, HeardEngine(["I greet", " the guard"]))
        cli.handle_line("/mic")
        assert "Heard: I greet the guard" in out.getvalue()
        assert controller.messages[0]["content"] == "I greet the guard"
        assert controller.status == Status.IDLE

    def test_mic_declined(self, controller, store):
        cli, out = _cli(controller, store, lines=["", "n"])
        cli.capture = SpeechCapture(cli.set_draft, HeardEngine(["never mind"]))
        cli.handle_line("/mic")
        assert controller.messages == []

    def test_mic_error_recovers(self, controller, store):
        cli, out = _cli(controller, store, lines=[""])
        cli.capture = SpeechCapture(cli.set_draft, HeardEngine(error="audio-capture"))
        cli.handle_line("/mic")
        assert "Could not hear you." in out.getvalue()
        assert controller.status == Status.IDLE

    def test_no_microphone(self, controller, store):
        cli, out = _cli(controller, store)
        cli.handle_line("/mic")
        assert "No microphone available." in out.getvalue()

    def test_run_until_quit(self, controller, store, replies):
        replies.append({"text": "Hi."})
        cli, out = _cli(controller, store, lines=["hello", "/quit", "never read"])
        cli.run()
        assert not cli.running
        assert cli.input_fn.lines == ["never read"]

    def test_run_stops_on_eof(self, controller, store):
        cli, out = _cli(controller, store, lines=[])
        cli.run()
        assert "GM Forge" in out.getvalue()


def test_parse_args_defaults(monkeypatch):
    monkeypatch.delenv("FORGE_SERVER", raising=False)
    args = parse_args([])
    assert args.server == "http://127.0.0.1:5051"
    assert not args.no_audio
    assert parse_args(["--no-mic", "--server", "http://h:1"]).server == "http://h:1"
