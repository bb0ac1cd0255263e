import copy
import json
from datetime import datetime, timezone

import pytest

from backup import (
    backup_filename,
    build_backup,
    compute_fingerprint,
    dump_backup,
    parse_backup,
    validate_backup,
)
from errors import (
    ChecksumMismatch,
    CorruptCollections,
    CountMismatch,
    MalformedRoot,
    MissingField,
    ParseError,
)


def _snapshot():
    return {
        "books": [{
            "id": 1, "title": "Capitães da Areia", "author": "Jorge Amado", "isbn": "978-85-359-0000-1",
            "totalCopies": 2, "availableCopies": 1,
        }],
        "students": [{"id": 1, "name": "João Silva", "registrationNumber": "2024001", "className": "8B"}],
        "loans": [{
            "id": 1, "bookId": 1, "studentId": 1, "loanDate": "2024-03-01", "dueDate": "2024-03-08",
            "returnDate": None, "status": "active",
        }],
    }


def _resign(payload):
    body = {k: v for k, v in payload.items() if k != "checksum"}
    payload["checksum"] = compute_fingerprint(body)
    return payload


@pytest.fixture
def payload():
    return build_backup(_snapshot(), now=datetime(2024, 3, 9, 12, 30, tzinfo=timezone.utc))


# --- Fingerprint ---

def test_fingerprint_is_deterministic():
    assert compute_fingerprint(_snapshot()) == compute_fingerprint(_snapshot())


def test_fingerprint_ignores_key_order():
    assert compute_fingerprint({"a": 1, "b": "x"}) == compute_fingerprint({"b": "x", "a": 1})


def test_fingerprint_is_lowercase_hex():
    value = compute_fingerprint({"a": 1})
    int(value, 16)
    assert value == value.lower()


def test_fingerprint_of_known_value():
    # '{"a":1}' -> 123 + 34 + 97 + 34 + 58 + 49 + 125
    assert compute_fingerprint({"a": 1}) == format(520, "x")


def test_fingerprint_ignores_whitespace_inside_strings():
    assert compute_fingerprint({"t": "a b"}) == compute_fingerprint({"t": "ab"})


def test_fingerprint_counts_non_ascii_as_utf16_units():
    # 'é' is one UTF-16 unit (0xE9); '😀' is a surrogate pair
    base = compute_fingerprint({"t": ""})
    assert int(compute_fingerprint({"t": "é"}), 16) - int(base, 16) == 0xE9
    assert int(compute_fingerprint({"t": "😀"}), 16) - int(base, 16) == 0xD83D + 0xDE00


def test_fingerprint_changes_when_content_changes():
    other = _snapshot()
    other["books"][0]["availableCopies"] = 2
    assert compute_fingerprint(other) != compute_fingerprint(_snapshot())


# --- Building ---

def test_build_backup_shape(payload):
    assert list(payload) == ["version", "exportTimestamp", "recordCount", "books", "students", "loans", "checksum"]
    assert payload["version"] == "1.0"
    assert payload["exportTimestamp"] == "2024-03-09T12:30:00.000Z"
    assert payload["recordCount"] == 3


def test_built_backup_validates(payload):
    validate_backup(payload)


def test_empty_snapshot_builds_valid_backup():
    payload = build_backup({"books": [], "students": [], "loans": []})
    assert payload["recordCount"] == 0
    validate_backup(payload)


def test_backup_filename(payload):
    assert backup_filename(payload) == "backup-library-2024-03-09.json"


def test_dump_and_parse_preserve_validity(payload):
    text = dump_backup(payload)
    assert "Capitães da Areia" in text
    validate_backup(parse_backup(text))
    validate_backup(parse_backup(text.encode("utf-8")))


# --- Parsing ---

@pytest.mark.parametrize("raw", ["", "not json", "{", b"\xff\xfe\x00"])
def test_parse_rejects_invalid_text(raw):
    with pytest.raises(ParseError):
        parse_backup(raw)


def test_parse_accepts_utf8_bom():
    assert parse_backup("\ufeff{}".encode("utf-8")) == {}


# --- Validation order ---

@pytest.mark.parametrize("missing", ["version", "exportTimestamp", "recordCount", "checksum"])
def test_missing_root_field(payload, missing):
    del payload[missing]
    with pytest.raises(MalformedRoot):
        validate_backup(payload)


def test_empty_root_field_counts_as_missing(payload):
    payload["version"] = ""
    with pytest.raises(MalformedRoot):
        validate_backup(payload)


@pytest.mark.parametrize("value", [[], "text", 42, None])
def test_non_object_root(value):
    with pytest.raises(MalformedRoot):
        validate_backup(value)


def test_collection_not_a_list(payload):
    payload["books"] = {"1": {}}
    with pytest.raises(CorruptCollections):
        validate_backup(payload)


def test_missing_collection(payload):
    del payload["loans"]
    with pytest.raises(CorruptCollections):
        validate_backup(payload)


def test_root_check_runs_before_collection_check(payload):
    del payload["checksum"]
    payload["books"] = "broken"
    with pytest.raises(MalformedRoot):
        validate_backup(payload)


def test_record_count_mismatch(payload):
    payload["recordCount"] = 4
    with pytest.raises(CountMismatch):
        validate_backup(payload)


def test_record_count_must_not_be_boolean():
    payload = build_backup({"books": [], "students": [], "loans": [{"id": 1}]})
    payload["recordCount"] = True
    _resign(payload)
    with pytest.raises(CountMismatch):
        validate_backup(payload)


def test_count_check_runs_before_checksum(payload):
    payload["recordCount"] = 10
    payload["checksum"] = "0"
    with pytest.raises(CountMismatch):
        validate_backup(payload)


def test_tampered_record_fails_checksum(payload):
    payload["books"][0]["availableCopies"] = 2
    with pytest.raises(ChecksumMismatch):
        validate_backup(payload)


def test_wrong_checksum(payload):
    payload["checksum"] = "deadbeef"
    with pytest.raises(ChecksumMismatch):
        validate_backup(payload)


def test_missing_record_field(payload):
    del payload["loans"][0]["status"]
    _resign(payload)
    with pytest.raises(MissingField) as exc_info:
        validate_backup(payload)
    assert exc_info.value.field == "status"
    assert exc_info.value.collection == "loans"


def test_checksum_runs_before_field_check(payload):
    del payload["students"][0]["className"]
    with pytest.raises(ChecksumMismatch):
        validate_backup(payload)


def test_null_valued_record_field_is_present(payload):
    payload["books"][0]["author"] = None
    _resign(payload)
    validate_backup(payload)


def test_non_object_record(payload):
    payload["students"][0] = "João"
    _resign(payload)
    with pytest.raises(CorruptCollections):
        validate_backup(payload)


def test_validation_does_not_mutate(payload):
    payload["recordCount"] = 7
    original = copy.deepcopy(payload)
    with pytest.raises(CountMismatch):
        validate_backup(payload)
    assert payload == original


def test_backup_text_from_disk_round_trips(tmp_path, payload):
    path = tmp_path / backup_filename(payload)
    path.write_text(dump_backup(payload), encoding="utf-8")
    loaded = parse_backup(path.read_bytes())
    assert loaded == json.loads(json.dumps(payload))
    validate_backup(loaded)


def test_fingerprint_counts_lone_surrogate_as_one_unit():
    base = compute_fingerprint({"t": ""})
    assert int(compute_fingerprint({"t": "\udc00"}), 16) - int(base, 16) == 0xDC00


def test_lone_surrogate_in_backup_fails_checksum_not_encoding():
    payload = json.loads(
        '{"version":"1.0","exportTimestamp":"2024-01-01T00:00:00.000Z","recordCount":1,'
        '"books":[{"title":"\\udc00"}],"students":[],"loans":[],"checksum":"abc"}'
    )
    with pytest.raises(ChecksumMismatch):
        validate_backup(payload)


def test_parse_rejects_deeply_nested_document():
    with pytest.raises(ParseError):
        parse_backup("[" * 200000 + "]" * 200000)
