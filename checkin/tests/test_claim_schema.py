import json

import pytest

from checkin.app.checks.claim_schema import parse_claim
from checkin.app.schemas.claim import canonical_message
from checkin.app.schemas.verdict import RejectionReason

from checkin.tests.fixtures.claim_factory import (
    NOW,
    VENUE_CELL,
    claim_fields,
    encode,
    generate_issuer,
)


@pytest.fixture
def issuer():
    return generate_issuer()


def _errors_by_field(result):
    return {error.field: error.message for error in result.field_errors}


def test_valid_claim_parses(issuer):
    key, public = issuer
    result = parse_claim(encode(claim_fields(key, public)))

    assert result.ok
    assert result.rejection is None
    claim = result.claim
    assert claim.version == 1
    assert claim.issuer == public
    assert claim.zone == [VENUE_CELL]
    assert claim.zone_tolerance == 0
    assert claim.issued_at == NOW - 10


def test_zone_list_is_accepted(issuer):
    key, public = issuer
    result = parse_claim(
        encode(claim_fields(key, public, zone=["u4pru", "u4prv"], zone_tolerance=1))
    )

    assert result.ok
    assert result.claim.zone == ["u4pru", "u4prv"]
    assert result.claim.zone_tolerance == 1


def test_oversized_payload_is_rejected_before_parsing():
    # Not even JSON: size is checked first
    result = parse_claim("x" * 3000)

    assert not result.ok
    assert result.rejection is RejectionReason.PAYLOAD_TOO_LARGE


def test_size_bound_counts_utf8_bytes(issuer):
    key, public = issuer
    fields = claim_fields(key, public, event_id="é" * 60)
    text = json.dumps(fields, ensure_ascii=False)

    limit = len(text.encode("utf-8")) - 1
    assert len(text) <= limit

    result = parse_claim(text, max_payload_bytes=limit)
    assert result.rejection is RejectionReason.PAYLOAD_TOO_LARGE


@pytest.mark.parametrize("raw", ["", "{not json", "[1, 2", "\x00"])
def test_malformed_json_is_rejected(raw):
    result = parse_claim(raw)
    assert result.rejection is RejectionReason.MALFORMED_PAYLOAD


def test_unpaired_surrogate_is_malformed_not_an_error():
    result = parse_claim('{"v": 1, "nonce": "' + "\ud800" + '"}')

    assert result.rejection is RejectionReason.MALFORMED_PAYLOAD


def test_escaped_surrogate_inside_claim_is_malformed(issuer):
    key, public = issuer
    fields = claim_fields(key, public, sign=False, nonce="nonce-\ud800-000001")
    fields["sig"] = "A" * 88
    text = encode(fields)
    assert "\\ud800" in text

    result = parse_claim(text)

    assert result.rejection is RejectionReason.MALFORMED_PAYLOAD


@pytest.mark.parametrize("raw", ["[]", "42", '"claim"', "null"])
def test_non_object_json_is_rejected(raw):
    result = parse_claim(raw)
    assert result.rejection is RejectionReason.MALFORMED_PAYLOAD


def test_every_missing_field_is_reported():
    result = parse_claim(json.dumps({"v": 1}))

    assert result.rejection is RejectionReason.SCHEMA_VIOLATION
    errors = _errors_by_field(result)
    for field in (
        "issuer",
        "event_id",
        "asset",
        "nonce",
        "issued_at",
        "expires_at",
        "zone",
        "sig",
    ):
        assert errors[field] == "Missing required field"
    assert "v" not in errors


def test_mistyped_fields_are_reported_together(issuer):
    key, public = issuer
    fields = claim_fields(key, public)
    fields["issued_at"] = "1700000000"
    fields["zone"] = 5
    fields["nonce"] = "short"

    result = parse_claim(encode(fields))

    assert result.rejection is RejectionReason.SCHEMA_VIOLATION
    errors = _errors_by_field(result)
    assert {"issued_at", "nonce"} <= set(errors)
    assert any(field.startswith("zone") for field in errors)


def test_boolean_is_not_accepted_as_timestamp(issuer):
    key, public = issuer
    fields = claim_fields(key, public)
    fields["expires_at"] = True

    result = parse_claim(encode(fields))
    assert "expires_at" in _errors_by_field(result)


def test_unsupported_version_is_a_schema_violation(issuer):
    key, public = issuer
    fields = claim_fields(key, public, sign=False, v=2)
    fields["sig"] = "A" * 88

    result = parse_claim(encode(fields))

    assert result.rejection is RejectionReason.SCHEMA_VIOLATION
    assert "v" in _errors_by_field(result)


def test_window_must_be_ordered(issuer):
    key, public = issuer
    fields = claim_fields(key, public, sign=False, expires_at=NOW - 100)
    fields["sig"] = "A" * 88

    result = parse_claim(encode(fields))
    assert result.rejection is RejectionReason.SCHEMA_VIOLATION


@pytest.mark.parametrize("zone", ["u4p", "u4pa1", "U4PRU", [], "u4pruydqqvjxx"])
def test_invalid_zone_codes_are_rejected(issuer, zone):
    key, public = issuer
    fields = claim_fields(key, public, sign=False, zone=zone)
    fields["sig"] = "A" * 88

    result = parse_claim(encode(fields))
    assert result.rejection is RejectionReason.SCHEMA_VIOLATION


def test_zone_code_outside_geocell_alphabet_names_the_cell(issuer):
    key, public = issuer
    fields = claim_fields(key, public, sign=False, zone=["u4pru", "u4pri"])
    fields["sig"] = "A" * 88

    errors = _errors_by_field(parse_claim(encode(fields)))

    assert "zone.0" not in errors
    assert "geocell alphabet" in errors["zone.1"]


def test_unknown_keys_are_ignored(issuer):
    key, public = issuer
    fields = claim_fields(key, public)
    fields["memo"] = "not covered by the signature"

    result = parse_claim(encode(fields))
    assert result.ok


def test_canonical_message_has_fixed_key_order(issuer):
    key, public = issuer
    shuffled = dict(reversed(list(claim_fields(key, public).items())))

    claim = parse_claim(encode(shuffled)).claim
    message = json.loads(canonical_message(claim))

    assert list(message) == [
        "v",
        "issuer",
        "event_id",
        "asset",
        "nonce",
        "issued_at",
        "expires_at",
        "zone",
    ]
    assert message["zone"] == {"cells": [VENUE_CELL], "tolerance": 0}
    assert b" " not in canonical_message(claim)
