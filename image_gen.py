"""Illustrations for generated documents via the image endpoint."""

import logging
import os
import re

from file_blocks import Matched
from openai_bridge import generate_image, get_config

log = logging.getLogger("forge")

PROMPT_BODY_CHARS = 600
IMAGE_STYLE = "Painterly fantasy illustration for a tabletop roleplaying game, no text or lettering."

_MD_NOISE_RE = re.compile(r"[#*_>`|]+")
_WS_RE = re.compile(r"\s+")


def _document_title(name: str) -> str:
    stem = os.path.splitext(name)[0]
    return stem.replace("_", " ").replace("-", " ").strip()


def build_image_prompt(doc: Matched) -> str:
    """Turn a document into a short scene description for the image model."""
    body = _MD_NOISE_RE.sub(" ", doc.body)
    body = _WS_RE.sub(" ", body).strip()[:PROMPT_BODY_CHARS]
    title = _document_title(doc.name)
    if body:
        return f"{IMAGE_STYLE} Subject: {title}. Details: {body}"
    return f"{IMAGE_STYLE} Subject: {title}."


def illustrate(documents: list[Matched]) -> str | None:
    """Generate an image for the first document. Returns its URL, or None when disabled."""
    if not documents:
        return None
    if not get_config()["image"].get("enabled", True):
        log.info("    image_gen: disabled, skipping %s", documents[0].name)
        return None
    prompt = build_image_prompt(documents[0])
    return generate_image(prompt)
