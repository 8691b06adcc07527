"""Persists the list of finished downloads and the artist/album suggestion lists."""
import json
import logging
import time
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

MAX_HISTORY_ITEMS = 50
MAX_SUGGESTIONS = 100


class HistoryEntry(BaseModel):
    title: str
    artist: str = ''
    album: str = ''
    format: str = ''
    output_path: str = ''
    reference: str = ''
    finished_at: float = Field(default_factory=time.time)


class MetadataHistory(BaseModel):
    artists: List[str] = []
    albums: List[str] = []


def _push_unique(values: List[str], value: Optional[str]) -> List[str]:
    if not value or not value.strip() or value in values:
        return values
    return ([value] + values)[:MAX_SUGGESTIONS]


class HistoryStore:
    """
    Reads and writes ``history.json`` and ``metadata-history.json``.

    Both files are rewritten whole on every change. Unreadable files are
    treated as empty.
    """

    def __init__(self, history_path: Path, metadata_path: Path):
        self.history_path = history_path
        self.metadata_path = metadata_path
        self.logger = logging.getLogger(__name__)

    def _read_json(self, path: Path, default):
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"Could not read {path.name}: {e}. Treating it as empty.")
            return default

    def _write_json(self, path: Path, payload: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(payload, encoding='utf-8')
        except OSError as e:
            self.logger.error(f"Error saving {path}: {e}")

    def load(self) -> List[HistoryEntry]:
        items = self._read_json(self.history_path, [])
        if not isinstance(items, list):
            self.logger.warning(f"{self.history_path.name} does not hold a list. Treating it as empty.")
            return []
        entries = []
        for item in items:
            try:
                entries.append(HistoryEntry.model_validate(item))
            except ValidationError:
                continue
        return entries

    def add(self, entry: HistoryEntry) -> None:
        """Prepends ``entry``, keeps the newest items, and records its artist/album."""
        entries = [entry] + self.load()
        entries = entries[:MAX_HISTORY_ITEMS]
        self._write_json(self.history_path, json.dumps([e.model_dump() for e in entries], indent=2))

        meta = self.load_metadata()
        meta.artists = _push_unique(meta.artists, entry.artist)
        meta.albums = _push_unique(meta.albums, entry.album)
        self._write_json(self.metadata_path, meta.model_dump_json(indent=2))

    def clear(self) -> None:
        self._write_json(self.history_path, '[]')

    def load_metadata(self) -> MetadataHistory:
        try:
            return MetadataHistory.model_validate(self._read_json(self.metadata_path, {}))
        except ValidationError:
            return MetadataHistory()
