"""Atomic note composition and front-matter (de)serialization.

Nothing in this module touches the filesystem; see ``note_store`` for that.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import yaml

from .schemas import AtomicNote, Query, SynthesisResult


FRONT_MATTER_DELIM = "---"
UNTITLED = "Untitled note"
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_WS_RE = re.compile(r"\s+")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_note_id(created_at: datetime) -> str:
    return f"{created_at:%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"


def derive_title(text: str, max_chars: int = 60) -> str:
    cleaned = _CONTROL_RE.sub(" ", text or "")
    cleaned = _WS_RE.sub(" ", cleaned).strip()
    cleaned = cleaned.rstrip("?.!").strip()
    if not cleaned:
        return UNTITLED
    if len(cleaned) > max_chars:
        head = cleaned[:max_chars]
        if " " in head:
            head = head.rsplit(" ", 1)[0]
        cleaned = head.rstrip(" ,;:-") + "..."
    return cleaned[0].upper() + cleaned[1:]


class NoteComposer:
    def __init__(
        self,
        title_max_chars: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[datetime], str]] = None,
    ):
        self.title_max_chars = title_max_chars
        self.clock = clock or utc_now
        self.id_factory = id_factory or new_note_id

    def compose(self, result: SynthesisResult, query: Query) -> AtomicNote:
        created_at = self.clock()
        return AtomicNote(
            note_id=self.id_factory(created_at),
            title=derive_title(query.text, self.title_max_chars),
            body=result.body,
            tags=list(result.tags),
            created_at=created_at,
            source_query=query.text,
            source_proposal=result.proposal_text or None,
        )


def render_note(note: AtomicNote) -> str:
    front = yaml.safe_dump(note.metadata(), sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"{FRONT_MATTER_DELIM}\n{front}{FRONT_MATTER_DELIM}\n\n{note.body}\n"


def parse_note(text: str) -> Tuple[Dict[str, Any], str]:
    """Split a rendered note back into its metadata mapping and body text."""
    opening = f"{FRONT_MATTER_DELIM}\n"
    closing = f"\n{FRONT_MATTER_DELIM}\n"
    if not text.startswith(opening):
        raise ValueError("note does not start with a front matter block")
    end = text.find(closing, len(opening) - 1)
    if end == -1:
        raise ValueError("front matter block is not terminated")
    metadata = yaml.safe_load(text[len(opening) : end + 1]) or {}
    if not isinstance(metadata, dict):
        raise ValueError("front matter is not a mapping")
    body = text[end + len(closing) :]
    if body.startswith("\n"):
        body = body[1:]
    if body.endswith("\n"):
        body = body[:-1]
    return metadata, body
