import asyncio
from pathlib import Path
from typing import Optional, Union

from .errors import PersistenceError
from .notes import render_note
from .schemas import AtomicNote, StoredNote


class MarkdownNoteStore:
    """Writes composed notes as ``<note_id>.md`` files with YAML front matter."""

    def __init__(self, notes_dir: Union[str, Path] = "notes"):
        self.notes_dir = Path(notes_dir)

    async def save(self, note: AtomicNote, directory: Optional[Union[str, Path]] = None) -> StoredNote:
        target = Path(directory) if directory else self.notes_dir
        text = render_note(note)
        try:
            path = await asyncio.to_thread(self._write, target, note.note_id, text)
        except OSError as exc:
            reason = exc.strerror or str(exc)
            raise PersistenceError(f"Could not write note {note.note_id}: {reason}", detail=str(exc)) from exc
        return StoredNote(note_id=note.note_id, path=str(path))

    @staticmethod
    def _write(directory: Path, stem: str, text: str) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{stem}.md"
        # Exclusive create: a colliding id must never clobber an existing note.
        with path.open("x", encoding="utf-8") as fh:
            fh.write(text)
        return path
