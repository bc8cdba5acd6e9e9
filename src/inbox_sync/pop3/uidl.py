# =============================================================================
# POP3 UIDL Handling
# =============================================================================
# POP3 has no numeric UIDs. Messages are addressed by a per-session message
# number, and UIDL gives each one a server-chosen opaque identifier string.
#
# Servers (and client libraries) disagree on the shape of a UIDL listing:
#
#   UidlText     "1 abc123\r\n2 def456"  or  [b"1 abc123", b"2 def456"]
#   UidlPairs    [(1, "abc123"), (2, "def456")]
#   UidlMapping  {"1": "abc123", "2": "def456"}
#
# parse_uidl() picks the variant; every variant turns itself into the same
# ordered list of UidlEntry(message_number, identifier).
#
# The identifier is hashed into a numeric uid with derive_uid(). Two
# different identifiers can collide (32-bit hash); a collision makes the
# cache treat the two messages as one. That risk is accepted.
# =============================================================================

import hashlib
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any


def derive_uid(identifier: str) -> int:
    """
    Turn a UIDL identifier into a stable unsigned 32-bit uid.

    The uid is the first four bytes of the MD5 digest of the identifier,
    read as a big-endian unsigned integer.

    Example:
        >>> derive_uid("UID-001") == derive_uid("UID-001")
        True
    """
    digest = hashlib.md5(identifier.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")


@dataclass(frozen=True)
class UidlEntry:
    """One message in a UIDL listing."""
    message_number: int
    identifier: str

    @property
    def uid(self) -> int:
        return derive_uid(self.identifier)


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _sorted(entries: list[UidlEntry]) -> list[UidlEntry]:
    return sorted(entries, key=lambda e: e.message_number)


class UidlListing(ABC):
    """A UIDL response in one of the shapes servers produce."""

    @abstractmethod
    def entries(self) -> list[UidlEntry]:
        """Return the listing as entries ordered by message number."""


@dataclass
class UidlText(UidlListing):
    """
    Line-oriented listing: "<number> <identifier>" per line.

    A line holding a single token keeps that token as its identifier and
    uses its position in the listing as the message number.
    """
    lines: list[str]

    @classmethod
    def from_raw(cls, raw: str | bytes | Sequence[str | bytes]) -> "UidlText":
        if isinstance(raw, (str, bytes, bytearray)):
            raw = _text(raw).splitlines()
        return cls(lines=[_text(line) for line in raw])

    def entries(self) -> list[UidlEntry]:
        entries = []
        position = 0
        for line in self.lines:
            parts = line.split()
            if not parts:
                continue
            position += 1
            if len(parts) >= 2 and parts[0].isdigit():
                entries.append(UidlEntry(int(parts[0]), parts[1]))
            else:
                entries.append(UidlEntry(position, parts[0]))
        return _sorted(entries)


@dataclass
class UidlPairs(UidlListing):
    """Listing of (message number, identifier) pairs."""
    pairs: list[tuple[Any, Any]]

    def entries(self) -> list[UidlEntry]:
        entries = []
        for position, pair in enumerate(self.pairs, start=1):
            if len(pair) >= 2:
                number, identifier = pair[0], pair[1]
            else:
                number, identifier = position, pair[0]
            entries.append(UidlEntry(int(_text(number)), _text(identifier)))
        return _sorted(entries)


@dataclass
class UidlMapping(UidlListing):
    """Listing keyed by message number."""
    mapping: Mapping[Any, Any]

    def entries(self) -> list[UidlEntry]:
        return _sorted([
            UidlEntry(int(_text(number)), _text(identifier))
            for number, identifier in self.mapping.items()
        ])


def parse_uidl(raw: Any) -> UidlListing:
    """
    Wrap a raw UIDL response in the matching listing variant.

    Raises:
        ValueError: If the response has none of the known shapes.
    """
    if isinstance(raw, (str, bytes, bytearray)):
        return UidlText.from_raw(raw)
    if isinstance(raw, Mapping):
        return UidlMapping(raw)
    if isinstance(raw, Sequence):
        items = list(raw)
        if all(isinstance(item, (str, bytes, bytearray)) for item in items):
            return UidlText.from_raw(items)
        if all(isinstance(item, (list, tuple)) for item in items):
            return UidlPairs([tuple(item) for item in items])
    raise ValueError(f"Unrecognized UIDL response: {type(raw).__name__}")


def page_slice(entries: list[UidlEntry], page: int, limit: int) -> list[UidlEntry]:
    """
    Take one newest-first page of a listing.

    The highest message numbers are the newest messages, so page 1 is the
    tail of the listing, reversed.
    """
    total = len(entries)
    start = max(0, total - page * limit)
    end = max(0, total - (page - 1) * limit)
    return list(reversed(entries[start:end]))
