"""Backup payloads: fingerprint, parsing and structural validation.

A backup is a JSON object::

    {version, exportTimestamp, recordCount, books, students, loans, checksum}

``checksum`` is a tamper-detection fingerprint computed over the object
without the checksum field. It catches corruption and casual edits; it is not
a cryptographic hash.
"""

from __future__ import annotations

import json
import re
import sys
from array import array
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from config import settings
from database import BOOKS, LOANS, STUDENTS
from errors import ChecksumMismatch, CorruptCollections, CountMismatch, MalformedRoot, MissingField, ParseError

ROOT_FIELDS = ("version", "exportTimestamp", "recordCount", "checksum")
COLLECTION_FIELDS = (BOOKS, STUDENTS, LOANS)

REQUIRED_FIELDS: Dict[str, List[str]] = {
    BOOKS: ["id", "title", "author", "isbn", "totalCopies", "availableCopies"],
    STUDENTS: ["id", "name", "registrationNumber", "className"],
    LOANS: ["id", "bookId", "studentId", "loanDate", "dueDate", "status"],
}

_WHITESPACE = re.compile(r"\s")


def compute_fingerprint(payload: Any) -> str:
    """Sum of the UTF-16 code units of the compact JSON text, whitespace removed, in hex.

    The sum does not depend on key order, so equal payloads always agree.
    """
    text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    text = _WHITESPACE.sub("", text)
    # surrogatepass counts a lone surrogate as one code unit
    units = array("H", text.encode("utf-16-le", "surrogatepass"))
    if sys.byteorder == "big":
        units.byteswap()
    return format(sum(units), "x")


def parse_backup(raw: Union[str, bytes, bytearray]) -> Any:
    """Decode backup text. Anything that is not JSON raises ``ParseError``."""
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8-sig")
        return json.loads(raw)
    except (ValueError, TypeError, RecursionError) as exc:
        raise ParseError(f"File is not valid JSON: {exc}") from exc


def _missing(value: Any) -> bool:
    return value is None or value == ""


def validate_backup(payload: Any) -> None:
    """Run the structural checks in order and stop at the first failure.

    The payload itself is never modified.
    """
    # 1) root fields
    if not isinstance(payload, Mapping) or any(_missing(payload.get(key)) for key in ROOT_FIELDS):
        raise MalformedRoot("Backup structure is invalid (root fields missing).")

    # 2) collections are lists
    if not all(isinstance(payload.get(name), list) for name in COLLECTION_FIELDS):
        raise CorruptCollections("Backup data is corrupt (expected lists of records).")

    # 3) record count
    actual = sum(len(payload[name]) for name in COLLECTION_FIELDS)
    record_count = payload["recordCount"]
    if isinstance(record_count, bool) or record_count != actual:
        raise CountMismatch(f"Record count {record_count!r} does not match the {actual} records present.")

    # 4) checksum
    body = {key: value for key, value in payload.items() if key != "checksum"}
    if payload["checksum"] != compute_fingerprint(body):
        raise ChecksumMismatch("Checksum is invalid. The file was modified or is corrupt.")

    # 5) required fields per record
    for name in COLLECTION_FIELDS:
        for record in payload[name]:
            if not isinstance(record, Mapping):
                raise CorruptCollections(f"A record in {name} is not an object.")
            for field in REQUIRED_FIELDS[name]:
                if field not in record:
                    raise MissingField(field, name)


def _timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_backup(snapshot: Mapping, version: Optional[str] = None,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
    """Wrap a store snapshot into a checksummed backup payload."""
    books = list(snapshot.get(BOOKS) or [])
    students = list(snapshot.get(STUDENTS) or [])
    loans = list(snapshot.get(LOANS) or [])
    payload: Dict[str, Any] = {
        "version": version or settings.backup_version,
        "exportTimestamp": _timestamp(now),
        "recordCount": len(books) + len(students) + len(loans),
        BOOKS: books,
        STUDENTS: students,
        LOANS: loans,
    }
    payload["checksum"] = compute_fingerprint(payload)
    return payload


def dump_backup(payload: Mapping) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)


def backup_filename(payload: Mapping) -> str:
    day = str(payload.get("exportTimestamp", ""))[:10] or datetime.now(timezone.utc).date().isoformat()
    return f"backup-library-{day}.json"


def snapshot_from_backup(payload: Mapping) -> Dict[str, list]:
    """The three collections of a validated payload, ready for a bulk replace."""
    return {name: payload[name] for name in COLLECTION_FIELDS}
