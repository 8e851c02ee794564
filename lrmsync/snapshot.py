#!/usr/bin/env python3
"""
Resource snapshot model.

A ResourceSnapshot is an immutable, ordered view of a whole localization dataset
at one point in time. Every entry is addressed by a composite EntryId of
(key, language_code, occurrence_index). Occurrences above 0 come from source
formats that allow the same key twice in one file; they are kept apart and merge
independently.
"""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Optional

from .errors import CorruptSnapshotError

# Keys in this namespace hold project configuration rather than translations.
CONFIG_PREFIX = "@config."


@dataclass(frozen=True, order=True)
class EntryId:
    """Composite identity of one translation value."""
    key: str
    language_code: str
    occurrence_index: int = 0

    def is_config(self) -> bool:
        return self.key.startswith(CONFIG_PREFIX)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "lang": self.language_code,
            "occurrence": self.occurrence_index,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EntryId":
        return cls(
            key=data["key"],
            language_code=data.get("lang", ""),
            occurrence_index=int(data.get("occurrence", 0)),
        )

    def __str__(self) -> str:
        label = f"{self.key}|{self.language_code}"
        if self.occurrence_index:
            label += f"#{self.occurrence_index}"
        return label


@dataclass(frozen=True)
class Entry:
    """
    A single translated value.

    Attributes:
        id: Composite identity
        value: Translated text (empty string is a real value, distinct from absent)
        comment: Optional translator comment
    """
    id: EntryId
    value: str
    comment: Optional[str] = None

    @property
    def key(self) -> str:
        return self.id.key

    @property
    def language_code(self) -> str:
        return self.id.language_code

    def same_content(self, other: Optional["Entry"]) -> bool:
        """Ordinal comparison of value and comment. No normalization."""
        if other is None:
            return False
        return self.value == other.value and self.comment == other.comment

    def content_hash(self) -> str:
        """SHA256 of value and comment separated by a NUL byte."""
        payload = self.value + "\0" + (self.comment or "")
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        data = self.id.to_dict()
        data["value"] = self.value
        if self.comment is not None:
            data["comment"] = self.comment
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Entry":
        if "key" not in data or "value" not in data:
            raise CorruptSnapshotError(f"Entry record missing key or value: {data!r}")
        return cls(
            id=EntryId.from_dict(data),
            value=data["value"],
            comment=data.get("comment"),
        )


def same_content(a: Optional[Entry], b: Optional[Entry]) -> bool:
    """Equality where None means 'absent' and only matches another absence."""
    if a is None or b is None:
        return a is None and b is None
    return a.same_content(b)


def compute_revision(entries: Iterable[Entry]) -> str:
    """Content-addressed revision: identical datasets get identical revisions."""
    digest = hashlib.sha256()
    for entry in sorted(entries, key=lambda e: e.id):
        digest.update(str(entry.id).encode("utf-8"))
        digest.update(b"\0")
        digest.update(entry.content_hash().encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()[:16]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ResourceSnapshot:
    """
    Immutable point-in-time dataset.

    Construction validates that every EntryId is unique and raises
    CorruptSnapshotError otherwise. The revision defaults to the content hash.
    """
    entries: tuple = ()
    revision: str = ""
    captured_at: str = ""
    _index: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        entries = tuple(self.entries)
        index: dict[EntryId, Entry] = {}
        for entry in entries:
            if not isinstance(entry, Entry):
                raise CorruptSnapshotError(f"Not an Entry: {entry!r}")
            if entry.id in index:
                raise CorruptSnapshotError(f"Duplicate entry identity: {entry.id}")
            index[entry.id] = entry
        object.__setattr__(self, "entries", entries)
        object.__setattr__(self, "_index", index)
        if not self.revision:
            object.__setattr__(self, "revision", compute_revision(entries))
        if not self.captured_at:
            object.__setattr__(self, "captured_at", _now())

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self.entries)

    def __contains__(self, entry_id: EntryId) -> bool:
        return entry_id in self._index

    def get(self, entry_id: EntryId) -> Optional[Entry]:
        return self._index.get(entry_id)

    def index(self) -> dict[EntryId, Entry]:
        """Copy of the id -> entry map."""
        return dict(self._index)

    def ids(self) -> list[EntryId]:
        return [e.id for e in self.entries]

    def languages(self) -> list[str]:
        return sorted({e.id.language_code for e in self.entries})

    def keys(self) -> list[str]:
        return list(dict.fromkeys(e.id.key for e in self.entries))

    def same_content(self, other: "ResourceSnapshot") -> bool:
        """True when both snapshots hold the same entries, ignoring order."""
        if len(self) != len(other):
            return False
        return all(same_content(e, other.get(e.id)) for e in self.entries)

    def replace_entries(self, entries: Iterable[Entry]) -> "ResourceSnapshot":
        """New snapshot with the given entries and a fresh revision."""
        return ResourceSnapshot(entries=tuple(entries))

    def filter(self, predicate: Callable[[EntryId], bool]) -> "ResourceSnapshot":
        return self.replace_entries(e for e in self.entries if predicate(e.id))

    def with_revision(self, revision: str) -> "ResourceSnapshot":
        """Same content, relabelled with a revision assigned by a remote."""
        return replace(self, revision=revision)

    def to_dict(self) -> dict:
        return {
            "revision": self.revision,
            "captured_at": self.captured_at,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ResourceSnapshot":
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            raise CorruptSnapshotError("Snapshot document must contain an 'entries' list")
        entries = tuple(Entry.from_dict(item) for item in data["entries"])
        return cls(
            entries=entries,
            revision=data.get("revision", ""),
            captured_at=data.get("captured_at", ""),
        )

    @classmethod
    def from_rows(cls, rows: Iterable[tuple]) -> "ResourceSnapshot":
        """
        Build a snapshot from (key, language_code, value[, comment]) rows.

        Repeated (key, language_code) pairs are numbered 0, 1, 2... in row order,
        the way duplicate keys appear in a parsed resource file.

        Args:
            rows: Iterable of 3- or 4-tuples

        Returns:
            New ResourceSnapshot
        """
        seen: dict[tuple[str, str], int] = {}
        entries = []
        for row in rows:
            key, lang, value = row[0], row[1], row[2]
            comment = row[3] if len(row) > 3 else None
            occurrence = seen.get((key, lang), 0)
            seen[(key, lang)] = occurrence + 1
            entries.append(Entry(EntryId(key, lang, occurrence), value, comment))
        return cls(entries=tuple(entries))

    @classmethod
    def from_mapping(cls, values: dict[str, str], language_code: str = "en") -> "ResourceSnapshot":
        """Shorthand for a single-language table of key -> value."""
        return cls.from_rows((k, language_code, v) for k, v in values.items())


EMPTY_SNAPSHOT_REVISION = compute_revision(())
