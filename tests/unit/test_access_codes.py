"""
Unit tests for the access code issuer.

Tests cover:
- Code generation: alphabet, length, entropy source
- issue: code + pointer transaction, notification, collision retry
- get_or_issue: reuse window, replacement, concurrent writers
"""

import re
from datetime import timedelta
from unittest.mock import patch

import pytest

from maintenance.credentials import codes
from maintenance.credentials.codes import (
    CODE_ALPHABET,
    build_portal_url,
    generate_access_code,
    get_or_issue,
    issue,
    load_access_code,
)
from maintenance.shared.exceptions import CodeCollisionError, PersistenceError
from maintenance.shared.models.dynamo import ActiveCodeKey, utc_now
from maintenance.shared.tools.audit import list_audit_events

DAY = 86400


def _code_items(table) -> list[dict]:
    response = table.scan()
    return [item for item in response["Items"] if item["PK"].startswith("CODE#")]


def _pointer(table, supplier_id: str, assistance_id: str | None = None) -> dict | None:
    return table.get_item(Key=ActiveCodeKey(supplier_id, assistance_id).to_key()).get("Item")


class TestGenerateAccessCode:
    """Tests for generate_access_code."""

    def test_default_length_and_alphabet(self):
        code = generate_access_code()
        assert len(code) == 24
        assert re.fullmatch(r"[A-Z0-9]{8,32}", code)
        assert set(code) <= set(CODE_ALPHABET)

    def test_explicit_length(self):
        assert len(generate_access_code(32)) == 32

    def test_codes_are_distinct(self):
        generated = {generate_access_code() for _ in range(200)}
        assert len(generated) == 200

    def test_portal_url_embeds_code(self):
        assert build_portal_url("ABCDEFGH12") == (
            "https://portal.test.example.com/supplier-portal?code=ABCDEFGH12"
        )


class TestIssue:
    """Tests for issue."""

    def test_issue_persists_code_and_pointer(self, seeded_directory, frozen_time):
        table = seeded_directory["table"]

        code = issue("sup-001", "ast-001", now=frozen_time)

        assert code.expires_at == frozen_time + DAY
        assert code.created_at == frozen_time
        stored = load_access_code(code.code)
        assert stored == code
        pointer = _pointer(table, "sup-001", "ast-001")
        assert pointer["code"] == code.code
        assert int(pointer["expires_at"]) == code.expires_at

    def test_issue_custom_ttl(self, seeded_directory, frozen_time):
        code = issue("sup-001", ttl=timedelta(hours=2), now=frozen_time)
        assert code.expires_at == frozen_time + 7200
        assert code.assistance_id is None

    def test_issue_overwrites_pointer(self, seeded_directory, frozen_time):
        table = seeded_directory["table"]

        first = issue("sup-001", now=frozen_time)
        second = issue("sup-001", now=frozen_time + 10)

        assert first.code != second.code
        assert _pointer(table, "sup-001")["code"] == second.code
        # Earlier codes stay valid until they expire
        assert load_access_code(first.code) is not None

    def test_issue_sends_magic_code_email(self, seeded_directory, dispatcher, frozen_time):
        code = issue("sup-001", "ast-001", dispatcher=dispatcher, now=frozen_time)

        assert dispatcher.call_count == 1
        sent = dispatcher.sent[0]
        assert sent["to"] == "ops@rossi-plumbing.example.com"
        assert sent["template"] == "magic_code"
        assert sent["data"]["magicCode"] == code.code
        assert sent["data"]["portalUrl"].endswith(f"code={code.code}")
        assert sent["data"]["supplierName"] == "Rossi Plumbing"

    def test_dispatch_failure_keeps_code(self, seeded_directory, failing_dispatcher, frozen_time):
        code = issue("sup-001", dispatcher=failing_dispatcher, now=frozen_time)

        assert load_access_code(code.code) is not None
        events = list_audit_events(utc_now().date(), event_type="magic_code_dispatch_failed")
        assert len(events) == 1
        assert events[0].metadata["code_prefix"] == code.code_prefix
        assert code.code not in str(events[0].metadata)

    def test_dispatcher_exception_keeps_code(self, seeded_directory, frozen_time):
        from tests.mocks.fake_dispatcher import FakeDispatcher

        code = issue(
            "sup-001",
            dispatcher=FakeDispatcher(raise_error=TimeoutError("read timeout")),
            now=frozen_time,
        )
        assert load_access_code(code.code) is not None

    def test_supplier_lookup_failure_keeps_code(self, seeded_directory, dispatcher, frozen_time):
        failure = PersistenceError("get", "TestMaintenancePortal", "read timeout")
        with patch("maintenance.credentials.codes.load_supplier", side_effect=failure):
            code = issue("sup-001", "ast-001", dispatcher=dispatcher, now=frozen_time)

        assert load_access_code(code.code) == code
        assert dispatcher.call_count == 0
        events = list_audit_events(utc_now().date(), event_type="magic_code_dispatch_failed")
        assert len(events) == 1
        assert "read timeout" in events[0].metadata["error"]

    def test_issue_is_audited_without_full_code(self, seeded_directory, frozen_time):
        code = issue("sup-001", now=frozen_time)

        events = list_audit_events(utc_now().date(), event_type="magic_code_issued")
        assert len(events) == 1
        assert events[0].actor_ref == "sup-001"
        assert events[0].metadata["code_prefix"] == code.code[:4] + "***"

    def test_collision_is_retried(self, seeded_directory, frozen_time):
        table = seeded_directory["table"]
        existing = issue("sup-001", now=frozen_time)

        with patch.object(
            codes,
            "generate_access_code",
            side_effect=[existing.code, "FRESHCODE0123456789ABCDE"],
        ) as generator:
            code = issue("sup-002", now=frozen_time)

        assert generator.call_count == 2
        assert code.code == "FRESHCODE0123456789ABCDE"
        # The colliding code still belongs to its original supplier
        assert load_access_code(existing.code).supplier_id == "sup-001"
        assert len(_code_items(table)) == 2

    def test_collision_retries_are_bounded(self, seeded_directory, frozen_time):
        existing = issue("sup-001", now=frozen_time)

        with patch.object(codes, "generate_access_code", return_value=existing.code) as generator:
            with pytest.raises(CodeCollisionError):
                issue("sup-002", now=frozen_time)

        assert generator.call_count == 5


class TestGetOrIssue:
    """Tests for get_or_issue."""

    def test_mints_reminder_code_when_none_exists(self, seeded_directory, frozen_time):
        code = get_or_issue("sup-001", "ast-001", now=frozen_time)

        assert code.expires_at == frozen_time + 30 * DAY
        assert _pointer(seeded_directory["table"], "sup-001", "ast-001")["code"] == code.code

    def test_reuses_code_with_enough_validity(self, seeded_directory, frozen_time):
        first = get_or_issue("sup-001", "ast-001", now=frozen_time)
        second = get_or_issue("sup-001", "ast-001", now=frozen_time + 5 * DAY)

        assert second.code == first.code
        assert len(_code_items(seeded_directory["table"])) == 1

    def test_replaces_code_close_to_expiry(self, seeded_directory, frozen_time):
        invite = issue("sup-001", "ast-001", now=frozen_time)

        # One hour later the 24h invite has only 23h left
        code = get_or_issue("sup-001", "ast-001", now=frozen_time + 3600)

        assert code.code != invite.code
        assert _pointer(seeded_directory["table"], "sup-001", "ast-001")["code"] == code.code

    def test_pairs_are_independent(self, seeded_directory, frozen_time):
        scoped = get_or_issue("sup-001", "ast-001", now=frozen_time)
        general = get_or_issue("sup-001", now=frozen_time)
        assert scoped.code != general.code

    def test_concurrent_writer_wins(self, seeded_directory, frozen_time):
        table = seeded_directory["table"]
        winner = get_or_issue("sup-001", "ast-001", now=frozen_time)
        real_load = codes._load_reusable
        calls = []

        def stale_first_read(pointer, reuse_cutoff):
            calls.append(pointer)
            if len(calls) == 1:
                return None  # this caller read before the winner committed
            return real_load(pointer, reuse_cutoff)

        with patch.object(codes, "_load_reusable", side_effect=stale_first_read):
            code = get_or_issue("sup-001", "ast-001", now=frozen_time)

        assert code.code == winner.code
        assert len(calls) == 2
        # The losing transaction wrote nothing
        assert len(_code_items(table)) == 1
