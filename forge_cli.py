"""Terminal client for GM Forge.

Talks to the Flask server, keeps the conversation, stores extracted
documents locally, plays the GM's voice and optionally listens to the mic.

Usage:
    python forge_cli.py
    python forge_cli.py --server http://127.0.0.1:5051 --documents data/documents.json
    python forge_cli.py --no-audio --no-mic
"""

import argparse
import logging
import os
import shutil
import subprocess
import sys
import tempfile

from audio_playback import AudioPlayback
from conversation import ConversationController, Status
from document_store import DocumentStore, InvalidDocumentName
from gm_client import DEFAULT_SERVER, ForgeClient
from speech_capture import ChunkedRecorderEngine, SpeechCapture

log = logging.getLogger("forge")

HELP_TEXT = """Commands:
  /files               list stored documents
  /open NAME           show a document
  /edit NAME           edit a document in $EDITOR
  /export NAME PATH    write a document to PATH
  /copy NAME           copy a document to the clipboard
  /delete NAME         remove a document
  /mic                 speak your action
  /skip                stop the GM's voice
  /help                show this help
  /quit                leave"""

# Tried in order; the text is written to stdin.
CLIPBOARD_COMMANDS = (
    ("pbcopy", []),
    ("wl-copy", []),
    ("xclip", ["-selection", "clipboard"]),
    ("xsel", ["--clipboard", "--input"]),
    ("clip", []),
)


def find_clipboard() -> list[str] | None:
    for name, args in CLIPBOARD_COMMANDS:
        path = shutil.which(name)
        if path:
            return [path, *args]
    return None


class ForgeCLI:
    def __init__(self, controller: ConversationController, store: DocumentStore,
                 player: AudioPlayback | None = None, capture: SpeechCapture | None = None,
                 input_fn=input, out=sys.stdout):
        self.controller = controller
        self.store = store
        self.player = player
        self.capture = capture
        self.input_fn = input_fn
        self.out = out
        self.draft = ""
        self.running = True
        self.commands = {
            "/files": self.cmd_files,
            "/open": self.cmd_open,
            "/edit": self.cmd_edit,
            "/export": self.cmd_export,
            "/copy": self.cmd_copy,
            "/delete": self.cmd_delete,
            "/mic": self.cmd_mic,
            "/skip": self.cmd_skip,
            "/help": self.cmd_help,
            "/quit": self.cmd_quit,
        }

    def say(self, text: str = ""):
        self.out.write(text + "\n")
        self.out.flush()

    def set_draft(self, text: str):
        self.draft = text

    # -- turn -----------------------------------------------------------------

    def send(self, text: str):
        status = self.controller.status
        if status == Status.SPEAKING:
            self.say("(The GM is still speaking. /skip to interrupt.)")
            return
        if status != Status.IDLE:
            self.say(f"(Busy: {status.value})")
            return

        self.say("GM is thinking...")
        if self.controller.submit(text):
            self.show_reply()
            return
        if self.controller.status == Status.ERROR:
            self.say(f"Something went wrong: {self.controller.last_error}")
            self.controller.dismiss_error()

    def show_reply(self):
        reply = self.controller.messages[-1]["content"]
        self.say()
        self.say(reply)
        self.say()
        for name in self.controller.last_documents:
            self.say(f"  saved document: {name}  (/open {name})")
        if self.controller.last_image:
            self.say(f"  illustration: {self.controller.last_image}")

    # -- commands -------------------------------------------------------------

    def _need_name(self, args: list[str]) -> str | None:
        if not args:
            self.say("Which document?")
            return None
        return args[0]

    def cmd_files(self, args):
        names = self.store.names()
        if not names:
            self.say("No documents yet.")
        for name in names:
            self.say(f"  {name}")

    def cmd_open(self, args):
        name = self._need_name(args)
        if not name:
            return
        doc = self.store.load(name)
        if doc is None:
            self.say(f"No document named {name}.")
            return
        self.say(f"── {doc.file_name} ──")
        self.say(doc.content)
        if doc.background_image:
            self.say(f"(illustration: {doc.background_image})")

    def cmd_edit(self, args):
        name = self._need_name(args)
        if not name:
            return
        doc = self.store.load(name)
        content = doc.content if doc else ""
        editor = os.environ.get("EDITOR", "vi")

        fd, path = tempfile.mkstemp(prefix="forge_", suffix=os.path.splitext(name)[1] or ".md")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            subprocess.run([editor, path], check=True)
            with open(path, "r", encoding="utf-8") as f:
                edited = f.read()
        except (OSError, subprocess.CalledProcessError) as e:
            self.say(f"Editor failed: {e}")
            return
        finally:
            if os.path.exists(path):
                os.remove(path)

        if edited == content and doc is not None:
            self.say("No changes.")
            return
        try:
            self.store.save(name, edited)
        except InvalidDocumentName as e:
            self.say(str(e))
            return
        self.say(f"Saved {name}.")

    def cmd_export(self, args):
        if len(args) < 2:
            self.say("Usage: /export NAME PATH")
            return
        name, path = args[0], args[1]
        doc = self.store.load(name)
        if doc is None:
            self.say(f"No document named {name}.")
            return
        with open(path, "w", encoding="utf-8") as f:
            f.write(doc.content)
        self.say(f"Wrote {path}.")

    def cmd_copy(self, args):
        name = self._need_name(args)
        if not name:
            return
        doc = self.store.load(name)
        if doc is None:
            self.say(f"No document named {name}.")
            return
        cmd = find_clipboard()
        if cmd is None:
            self.say("No clipboard tool found (install xclip, xsel or wl-clipboard).")
            return
        try:
            subprocess.run(cmd, input=doc.content.encode("utf-8"), check=True, timeout=10)
        except (OSError, subprocess.SubprocessError) as e:
            log.warning("forge_cli: clipboard copy failed — %s", e)
            self.say(f"Copy failed: {e}")
            return
        self.say(f"Copied {name} to the clipboard.")

    def cmd_delete(self, args):
        name = self._need_name(args)
        if not name:
            return
        if self.store.delete(name):
            self.say(f"Deleted {name}.")
        else:
            self.say(f"No document named {name}.")

    def cmd_mic(self, args):
        if self.capture is None or not self.capture.has_microphone:
            self.say("No microphone available.")
            return
        if not self.controller.start_recording():
            self.say(f"(Busy: {self.controller.status.value})")
            return

        self.draft = ""
        self.capture.toggle_listening()
        self.input_fn("Listening... press Enter when done. ")
        if self.capture.is_listening:
            self.capture.toggle_listening()

        if self.capture.last_error:
            self.controller.recording_failed(self.capture.last_error)
            self.say("Could not hear you.")
            self.controller.dismiss_error()
            return
        self.controller.stop_recording()

        if not self.draft.strip():
            self.say("Heard nothing.")
            return
        self.say(f"Heard: {self.draft}")
        answer = self.input_fn("Send it? [Y/n] ").strip().lower()
        if answer in ("", "y", "yes"):
            self.send(self.draft)

    def cmd_skip(self, args):
        if self.player is not None:
            self.player.stop()

    def cmd_help(self, args):
        self.say(HELP_TEXT)

    def cmd_quit(self, args):
        if self.player is not None:
            self.player.stop()
        self.running = False

    # -- loop -----------------------------------------------------------------

    def handle_line(self, line: str):
        line = line.strip()
        if not line:
            return
        if line.startswith("/"):
            cmd, *args = line.split()
            handler = self.commands.get(cmd.lower())
            if handler is None:
                self.say(f"Unknown command {cmd}. /help lists commands.")
                return
            handler(args)
            return
        self.send(line)

    def run(self):
        self.say("GM Forge — describe your action, or /help.")
        while self.running:
            try:
                line = self.input_fn("> ")
            except (EOFError, KeyboardInterrupt):
                self.say()
                break
            self.handle_line(line)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="GM Forge terminal client")
    parser.add_argument(
        "--server", default=os.environ.get("FORGE_SERVER", DEFAULT_SERVER),
        help="GM Forge server URL",
    )
    parser.add_argument(
        "--documents", default=os.path.join("data", "documents.json"),
        help="document store file",
    )
    parser.add_argument("--no-audio", action="store_true", help="do not play the GM's voice")
    parser.add_argument("--no-mic", action="store_true", help="disable /mic")
    parser.add_argument("--verbose", action="store_true", help="log requests and state changes")
    return parser.parse_args(argv)


def build_cli(args) -> ForgeCLI:
    client = ForgeClient(args.server)
    store = DocumentStore(args.documents)
    store.migrate_legacy()

    controller = ConversationController(client.chat, store)
    if not args.no_audio:
        player = AudioPlayback(on_ended=controller.playback_ended)
        if player.available:
            controller.player = player
        else:
            log.warning("No audio player found; the GM will stay silent.")

    cli = ForgeCLI(controller, store, player=controller.player)
    if not args.no_mic:
        cli.capture = SpeechCapture(cli.set_draft, ChunkedRecorderEngine(client.transcribe))
    return cli


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        format="[%(asctime)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=logging.INFO if args.verbose else logging.WARNING,
    )
    build_cli(args).run()


if __name__ == "__main__":
    main()
