"""File-block parser — finds ``[File: name.md]`` documents embedded in GM replies.

A document is a marker line followed immediately by a fenced block::

    [File: character_sheet.md]
    ```markdown
    # Aria, level 3 rogue
    ```

Markers that are not followed by a well-formed block are reported as
``Unmatched`` and left in the text untouched.
"""

import re
from dataclasses import dataclass

_MARKER_RE = re.compile(r"\[File:\s*(?P<name>[^\]\n]+?\.md)\s*\]")
_BLOCK_RE = re.compile(
    r"\[File:\s*(?P<name>[^\]\n]+?\.md)\s*\][ \t]*\n"
    r"```(?:markdown|md)?[ \t]*\n"
    r"(?P<body>.*?)"
    r"```",
    re.DOTALL,
)

# Speech sanitization: two independent passes
_SPEECH_MARKER_RE = re.compile(r"\[File:\s*[^\]\n]+?\.md\s*\]\n?")
_SPEECH_FENCE_RE = re.compile(r"```[\s\S]+?```")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class Matched:
    name: str
    body: str
    span: tuple[int, int]


@dataclass(frozen=True)
class Unmatched:
    raw: str
    span: tuple[int, int]


def marker(name: str) -> str:
    return f"[File: {name}]"


def parse_reply(text: str) -> list[Matched | Unmatched]:
    """Return one tagged result per ``[File: ...]`` marker, in order of appearance."""
    results: list[Matched | Unmatched] = []
    pos = 0
    while True:
        m = _MARKER_RE.search(text, pos)
        if not m:
            break
        block = _BLOCK_RE.match(text, m.start())
        if block:
            body = block.group("body").strip("\n")
            results.append(Matched(block.group("name").strip(), body, block.span()))
            pos = block.end()
        else:
            results.append(Unmatched(m.group(0), m.span()))
            pos = m.end()
    return results


def extract_documents(text: str) -> tuple[str, list[Matched]]:
    """Replace every well-formed file block with its bare marker.

    Returns (display_text, matched_blocks). Unmatched markers stay verbatim.
    """
    matches = [r for r in parse_reply(text) if isinstance(r, Matched)]
    if not matches:
        return text, []

    pieces: list[str] = []
    last = 0
    for m in matches:
        start, end = m.span
        pieces.append(text[last:start])
        pieces.append(marker(m.name))
        last = end
    pieces.append(text[last:])
    return "".join(pieces), matches


def has_documents(text: str) -> bool:
    return any(isinstance(r, Matched) for r in parse_reply(text))


def speech_text(text: str) -> str:
    """Strip file markers and fenced code so they are not read aloud."""
    text = _SPEECH_MARKER_RE.sub("", text)
    text = _SPEECH_FENCE_RE.sub("", text)
    return _BLANK_LINES_RE.sub("\n\n", text).strip()
