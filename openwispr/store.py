"""JSON-backed persistence for settings, history, dictionary and word stats.

The store file is shared by the background service and the capture process.
Every mutation re-reads the whole document, applies the change and writes it
back atomically, so a writer never clobbers keys it did not touch.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from openwispr.config import Settings
from openwispr.errors import DuplicateEntryError
from openwispr.types import TranscriptionRecordDict, WordStats

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


class JsonStore:
    """Key-value store persisted as a single JSON document."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Store %s unreadable, treating as empty: %s", self._path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self.read().get(key, default)

    def update(self, mutate: Callable[[dict[str, Any]], Any]) -> Any:
        """Re-read the document, let ``mutate`` change it, then write it back."""
        with self._lock:
            data = self.read()
            result = mutate(data)
            self._write(data)
            return result

    def set(self, key: str, value: Any) -> None:
        self.update(lambda data: data.__setitem__(key, value))

    def clear(self) -> None:
        with self._lock:
            self._write({})

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=".store-", suffix=".json", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise


class SettingsStore:
    def __init__(self, store: JsonStore, fallback_api_key: str | None = None) -> None:
        self._store = store
        self._fallback_api_key = fallback_api_key

    def get(self) -> Settings:
        settings = Settings.from_dict(self._store.get("settings", {}) or {})
        if not settings.api_key and self._fallback_api_key:
            settings = settings.merged({"api_key": self._fallback_api_key})
        return settings

    def set(self, partial: Mapping[str, Any]) -> Settings:
        # Validate before touching disk.
        Settings().merged(partial)

        def mutate(data: dict[str, Any]) -> Settings:
            current = Settings.from_dict(data.get("settings", {}) or {})
            updated = current.merged(partial)
            data["settings"] = updated.to_dict()
            return updated

        return self._store.update(mutate)

    def clear_all(self) -> None:
        self._store.clear()


class HistoryStore:
    def __init__(self, store: JsonStore, limit: int = HISTORY_LIMIT) -> None:
        self._store = store
        self._limit = limit

    def list(self) -> list[TranscriptionRecordDict]:
        return list(self._store.get("history", []) or [])

    def add(self, text: str, word_count: int) -> TranscriptionRecordDict:
        record: TranscriptionRecordDict = {
            "id": new_id(),
            "text": text,
            "timestamp": now_ms(),
            "word_count": word_count,
        }

        def mutate(data: dict[str, Any]) -> None:
            history = data.get("history", []) or []
            data["history"] = [record, *history][: self._limit]

        self._store.update(mutate)
        return record

    def delete(self, record_id: str) -> list[TranscriptionRecordDict]:
        def mutate(data: dict[str, Any]) -> list[TranscriptionRecordDict]:
            history = [r for r in data.get("history", []) or [] if r.get("id") != record_id]
            data["history"] = history
            return history

        return self._store.update(mutate)

    def clear(self) -> None:
        self._store.set("history", [])


@dataclass(frozen=True)
class DictionaryEntry:
    id: str
    original: str
    corrected: str
    case_sensitive: bool = False
    enabled: bool = True
    created_at: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DictionaryEntry":
        return cls(
            id=str(data["id"]),
            original=str(data["original"]),
            corrected=str(data["corrected"]),
            case_sensitive=bool(data.get("case_sensitive", False)),
            enabled=bool(data.get("enabled", True)),
            created_at=int(data.get("created_at", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def same_original(self, other: "DictionaryEntry") -> bool:
        """True when either entry's matching rule would claim the other's key."""
        if self.original == other.original:
            return True
        if self.case_sensitive and other.case_sensitive:
            return False
        return self.original.lower() == other.original.lower()


_ENTRY_FIELDS = frozenset({"original", "corrected", "case_sensitive", "enabled"})


class DictionaryStore:
    def __init__(self, store: JsonStore) -> None:
        self._store = store

    def list(self) -> list[DictionaryEntry]:
        return [DictionaryEntry.from_dict(item) for item in self._store.get("dictionary", []) or []]

    def enabled(self) -> list[DictionaryEntry]:
        return [entry for entry in self.list() if entry.enabled]

    def add(
        self,
        original: str,
        corrected: str,
        case_sensitive: bool = False,
        enabled: bool = True,
    ) -> DictionaryEntry:
        entry = DictionaryEntry(
            id=new_id(),
            original=_require_text(original, "original"),
            corrected=corrected,
            case_sensitive=case_sensitive,
            enabled=enabled,
            created_at=now_ms(),
        )

        def mutate(data: dict[str, Any]) -> DictionaryEntry:
            entries = [DictionaryEntry.from_dict(item) for item in data.get("dictionary", []) or []]
            _check_unique(entry, entries)
            data["dictionary"] = [entry.to_dict(), *(e.to_dict() for e in entries)]
            return entry

        return self._store.update(mutate)

    def update(self, entry_id: str, **changes: Any) -> DictionaryEntry:
        unknown = set(changes) - _ENTRY_FIELDS
        if unknown:
            raise ValueError(f"Unknown dictionary fields: {', '.join(sorted(unknown))}")
        if "original" in changes:
            changes["original"] = _require_text(changes["original"], "original")

        def mutate(data: dict[str, Any]) -> DictionaryEntry:
            entries = [DictionaryEntry.from_dict(item) for item in data.get("dictionary", []) or []]
            target = _find(entries, entry_id)
            updated = DictionaryEntry(**{**target.to_dict(), **changes})
            _check_unique(updated, [e for e in entries if e.id != entry_id])
            data["dictionary"] = [
                (updated if e.id == entry_id else e).to_dict() for e in entries
            ]
            return updated

        return self._store.update(mutate)

    def toggle(self, entry_id: str) -> DictionaryEntry:
        current = _find(self.list(), entry_id)
        return self.update(entry_id, enabled=not current.enabled)

    def delete(self, entry_id: str) -> list[DictionaryEntry]:
        def mutate(data: dict[str, Any]) -> list[DictionaryEntry]:
            kept = [item for item in data.get("dictionary", []) or [] if item.get("id") != entry_id]
            data["dictionary"] = kept
            return [DictionaryEntry.from_dict(item) for item in kept]

        return self._store.update(mutate)


def _require_text(value: str, name: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"Dictionary {name} must not be empty")
    return value


def _find(entries: list[DictionaryEntry], entry_id: str) -> DictionaryEntry:
    for entry in entries:
        if entry.id == entry_id:
            return entry
    raise KeyError(entry_id)


def _check_unique(entry: DictionaryEntry, others: list[DictionaryEntry]) -> None:
    if not entry.enabled:
        return
    for other in others:
        if other.enabled and entry.same_original(other):
            raise DuplicateEntryError(f"An enabled entry for {entry.original!r} already exists")


def month_key(moment: datetime) -> str:
    return f"{moment.year}-{moment.month}"


class WordCounter:
    """Cumulative and per-calendar-month word counters."""

    def __init__(self, store: JsonStore) -> None:
        self._store = store

    def stats(self, now: datetime | None = None) -> WordStats:
        data = self._store.read()
        current = month_key(now or datetime.now())
        monthly = int(data.get("words_this_month", 0) or 0)
        if data.get("word_count_month") != current:
            monthly = 0
        return {
            "words_this_month": monthly,
            "words_total": int(data.get("words_total", 0) or 0),
        }

    def add(self, count: int, now: datetime | None = None) -> WordStats:
        current = month_key(now or datetime.now())

        def mutate(data: dict[str, Any]) -> WordStats:
            if data.get("word_count_month") != current:
                data["word_count_month"] = current
                monthly = count
            else:
                monthly = int(data.get("words_this_month", 0) or 0) + count
            total = int(data.get("words_total", 0) or 0) + count
            data["words_this_month"] = monthly
            data["words_total"] = total
            return {"words_this_month": monthly, "words_total": total}

        return self._store.update(mutate)
