"""Tests for credential parsing and the JSON roster store."""

import json
import re
from pathlib import Path

import pytest

from account_rotator.exceptions import InvalidCredentialInputError
from account_rotator.rotation.accounts import (
    BareTokenInput,
    CredentialRecord,
    JsonRosterStore,
    OAuthJsonInput,
    build_credential_record,
    generate_account_id,
    parse_credential_input,
)
from tests.factories import NOW, make_credential


@pytest.mark.unit
class TestParseCredentialInput:
    def test_oauth_json(self) -> None:
        parsed = parse_credential_input(
            '{"refresh": "r-1", "access": "a-1", "expires": 123, "label": "Work"}'
        )

        assert parsed == OAuthJsonInput(
            access_token="a-1", refresh_token="r-1", expires_at=123, label="Work"
        )

    def test_json_string_is_bare_token(self) -> None:
        assert parse_credential_input('"tok-123"') == BareTokenInput(token="tok-123")

    def test_plain_text_is_bare_token(self) -> None:
        assert parse_credential_input("  ya29.token \n") == BareTokenInput(token="ya29.token")

    @pytest.mark.parametrize(
        "text",
        ["", "   ", '{"access": "a"}', '{"refresh": "r", "access": ""}', "[1, 2]", "42"],
    )
    def test_invalid_input_raises(self, text: str) -> None:
        with pytest.raises(InvalidCredentialInputError):
            parse_credential_input(text)

    def test_build_record_from_bare_token(self) -> None:
        record = build_credential_record(BareTokenInput(token="t"), label="Backup", now=NOW)

        assert record.access_token == "t"
        assert record.refresh_token == "t"
        assert record.expires_at == NOW + 3_600_000
        assert record.added_at == NOW
        assert record.label == "Backup"
        assert record.enabled is True

    def test_build_record_keeps_oauth_expiry_and_label(self) -> None:
        parsed = OAuthJsonInput(
            access_token="a", refresh_token="r", expires_at=NOW + 5, label="Home"
        )

        record = build_credential_record(parsed, now=NOW)

        assert record.expires_at == NOW + 5
        assert record.label == "Home"

    def test_generated_id_format(self) -> None:
        assert re.fullmatch(r"acc_1700000000000_[0-9a-z]{9}", generate_account_id(NOW))


@pytest.mark.unit
class TestCredentialRecord:
    def test_expires_within(self) -> None:
        record = make_credential("a", expires_at=NOW + 59_000)

        assert record.expires_within(60, now=NOW)
        assert not record.expires_within(30, now=NOW)

    def test_dict_round_trip_preserves_fields(self) -> None:
        record = make_credential("a", enabled=False, label="Work")

        assert CredentialRecord.from_dict(record.to_dict()) == record

    def test_from_dict_defaults(self) -> None:
        record = CredentialRecord.from_dict(
            {"id": "x", "access": "a", "refresh": "r", "expires": 1}
        )

        assert record.enabled is True
        assert record.label is None
        assert record.added_at == 0

    def test_status_hides_tokens(self) -> None:
        status = make_credential("a").to_status(0, now=NOW)

        assert status["label"] == "#1"
        assert "access" not in json.dumps(status)


@pytest.mark.unit
class TestJsonRosterStore:
    def test_missing_file_loads_empty(self, tmp_path: Path) -> None:
        assert JsonRosterStore(tmp_path / "missing.json").load() == []

    def test_save_then_load(self, tmp_path: Path) -> None:
        store = JsonRosterStore(tmp_path / "nested" / "credentials.json")
        roster = [make_credential("a"), make_credential("b", enabled=False)]

        assert store.save(roster) is True
        assert store.load() == roster
        assert (store.path.stat().st_mode & 0o777) == 0o600

    def test_invalid_entries_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "credentials.json"
        path.write_text(
            json.dumps([make_credential("a").to_dict(), {"id": "broken"}])
        )

        roster = JsonRosterStore(path).load()

        assert [c.id for c in roster] == ["a"]

    def test_null_added_at_loads_from_store(self, tmp_path: Path) -> None:
        path = tmp_path / "credentials.json"
        entry = {**make_credential("a").to_dict(), "addedAt": None}
        path.write_text(json.dumps([entry]))

        [record] = JsonRosterStore(path).load()

        assert record.id == "a"
        assert record.added_at == 0

    def test_non_array_file_loads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps({"accounts": {}}))

        assert JsonRosterStore(path).load() == []

    def test_corrupt_file_loads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "credentials.json"
        path.write_text("{not json")

        assert JsonRosterStore(path).load() == []
