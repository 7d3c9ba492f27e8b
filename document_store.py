"""Persistent key-value store for generated documents (character sheets, notes).

Records live in a single JSON object file mapping document name to an encoded
string. The canonical encoding is a JSON envelope::

    {"content": "...", "backgroundImage": "https://..." | null}

Older records hold the raw content string instead. Those stay readable
forever and can be rewritten in place with ``migrate_legacy()``.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass

log = logging.getLogger("forge")

DOCUMENT_EXTENSIONS = (".md", ".txt")
_ENVELOPE_KEYS = {"content", "backgroundImage"}


class InvalidDocumentName(ValueError):
    """Raised for names that are empty, contain path separators or lack an extension."""


@dataclass
class Document:
    file_name: str
    content: str
    background_image: str | None = None

    def to_dict(self) -> dict:
        return {
            "fileName": self.file_name,
            "content": self.content,
            "backgroundImage": self.background_image,
        }


def validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidDocumentName("document name is empty")
    if "/" in name or "\\" in name or name.startswith("."):
        raise InvalidDocumentName(f"invalid document name: {name!r}")
    if not name.lower().endswith(DOCUMENT_EXTENSIONS):
        raise InvalidDocumentName(
            f"document name must end with one of {', '.join(DOCUMENT_EXTENSIONS)}: {name!r}"
        )
    return name


def encode_document(doc: Document) -> str:
    return json.dumps(
        {"content": doc.content, "backgroundImage": doc.background_image},
        ensure_ascii=False,
    )


def is_envelope(raw: str) -> bool:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return False
    return (
        isinstance(data, dict)
        and isinstance(data.get("content"), str)
        and set(data) <= _ENVELOPE_KEYS
    )


def decode_document(name: str, raw: str) -> Document:
    """Decode either encoding. Anything that is not an envelope is legacy content."""
    if is_envelope(raw):
        data = json.loads(raw)
        bg = data.get("backgroundImage")
        return Document(name, data["content"], bg if isinstance(bg, str) and bg else None)
    return Document(name, raw, None)


class DocumentStore:
    """File-backed document store. Every write re-reads the file first."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    # -- raw records --------------------------------------------------------

    def _read_records(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            log.warning("document_store: %s is not a JSON object, ignoring", self.path)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _write_records(self, records: dict):
        d = os.path.dirname(self.path)
        if d:
            os.makedirs(d, exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(records, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    # -- public API ---------------------------------------------------------

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._read_records())

    def load(self, name: str) -> Document | None:
        with self._lock:
            raw = self._read_records().get(name)
        if raw is None:
            return None
        return decode_document(name, raw)

    def save(self, name: str, content: str, background_image: str | None = None) -> Document:
        """Overwrite the record for ``name``. Without a new background image the old one is kept."""
        name = validate_name(name)
        with self._lock:
            records = self._read_records()
            if background_image is None and name in records:
                background_image = decode_document(name, records[name]).background_image
            doc = Document(name, content, background_image)
            records[name] = encode_document(doc)
            self._write_records(records)
        log.info("document_store: saved %s (%d chars)", name, len(content))
        return doc

    def delete(self, name: str) -> bool:
        with self._lock:
            records = self._read_records()
            if name not in records:
                return False
            del records[name]
            self._write_records(records)
        log.info("document_store: deleted %s", name)
        return True

    def migrate_legacy(self) -> int:
        """Rewrite plain-string records as envelopes. Returns the number migrated."""
        with self._lock:
            records = self._read_records()
            migrated = 0
            for name, raw in records.items():
                if not is_envelope(raw):
                    records[name] = encode_document(Document(name, raw, None))
                    migrated += 1
            if migrated:
                self._write_records(records)
        if migrated:
            log.info("document_store: migrated %d legacy record(s)", migrated)
        return migrated
