"""
Unit tests for the follow-up processor.

Tests cover:
- Outcome recording: sent, retryable failure, exhausted failure
- Retry selection after the backoff
- Batch bound, per-item isolation, selection failure
- Claims: lost claims are skipped, overlapping runs never double-send
- Stale claim recovery
- Type-specific reminder payloads
"""

from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import EndpointConnectionError, ReadTimeoutError

from maintenance.followups.processor import (
    DueFollowUp,
    ProcessingResult,
    claim_follow_up,
    process_follow_ups,
    select_due_follow_ups,
)
from maintenance.followups.store import cancel_follow_up, create_follow_up, load_follow_up
from maintenance.shared.exceptions import PersistenceError
from maintenance.shared.models.dynamo import (
    NEVER_DUE_SORT_KEY,
    FollowUpKey,
    FollowUpSchedule,
    utc_now,
)
from maintenance.shared.models.follow_up import (
    CompletionReminderMetadata,
    FollowUpType,
    WorkReminderMetadata,
)
from maintenance.shared.state_machine import FollowUpStatus
from maintenance.shared.tools.audit import list_audit_events
from tests.mocks.fake_dispatcher import FakeDispatcher

HOUR = 3600
DAY = 86400


def _put_schedule(table, now: int, **overrides) -> FollowUpSchedule:
    """Write a schedule directly, e.g. with attempts already used."""
    fields = {
        "assistance_id": "ast-001",
        "supplier_id": "sup-001",
        "follow_up_type": FollowUpType.WORK_REMINDER,
        "scheduled_for": now - DAY,
        "metadata": WorkReminderMetadata(work_date=date(2025, 2, 10)),
        "created_at": now - 2 * DAY,
        "updated_at": now - 2 * DAY,
    }
    fields.update(overrides)
    schedule = FollowUpSchedule(**fields)
    table.put_item(Item=schedule.to_dynamodb())
    return schedule


def _raw(table, follow_up_id: str) -> dict:
    return table.get_item(Key=FollowUpKey(follow_up_id).to_key())["Item"]


class TestOutcomes:
    """Status after one run."""

    def test_successful_dispatch_marks_sent(self, seeded_directory, dispatcher, frozen_time):
        schedule = _put_schedule(seeded_directory["table"], frozen_time)

        result = process_follow_ups(dispatcher, now=frozen_time)

        assert result.to_response() == {"success": True, "processed": 1, "errors": 0, "total": 1}
        stored = load_follow_up(schedule.follow_up_id)
        assert stored.status == FollowUpStatus.SENT
        assert stored.attempt_count == 1
        assert stored.sent_at == frozen_time
        assert stored.claimed_at is None

    def test_failed_dispatch_schedules_retry(self, seeded_directory, failing_dispatcher, frozen_time):
        schedule = _put_schedule(seeded_directory["table"], frozen_time)

        result = process_follow_ups(failing_dispatcher, now=frozen_time)

        assert result.to_response() == {"success": True, "processed": 0, "errors": 1, "total": 1}
        stored = load_follow_up(schedule.follow_up_id)
        assert stored.status == FollowUpStatus.FAILED
        assert stored.attempt_count == 1
        assert stored.next_attempt_at == frozen_time + 4 * HOUR
        assert stored.sent_at is None
        assert "SMTP relay unavailable" in stored.last_error

    def test_last_attempt_failure_is_terminal(self, seeded_directory, failing_dispatcher, frozen_time):
        table = seeded_directory["table"]
        schedule = _put_schedule(table, frozen_time, attempt_count=2, max_attempts=3)

        process_follow_ups(failing_dispatcher, now=frozen_time)

        stored = load_follow_up(schedule.follow_up_id)
        assert stored.status == FollowUpStatus.FAILED
        assert stored.attempt_count == 3
        assert stored.next_attempt_at is None
        assert _raw(table, schedule.follow_up_id)["GSI1SK"] == NEVER_DUE_SORT_KEY

    def test_dispatcher_exception_is_a_failed_attempt(self, seeded_directory, frozen_time):
        schedule = _put_schedule(seeded_directory["table"], frozen_time)
        dispatcher = FakeDispatcher(raise_error=TimeoutError("SES read timeout"))

        result = process_follow_ups(dispatcher, now=frozen_time)

        assert result.errors == 1
        stored = load_follow_up(schedule.follow_up_id)
        assert stored.status == FollowUpStatus.FAILED
        assert stored.last_error == "SES read timeout"

    def test_outcomes_are_audited(self, seeded_directory, frozen_time):
        table = seeded_directory["table"]
        _put_schedule(table, frozen_time)
        process_follow_ups(FakeDispatcher(), now=frozen_time)
        _put_schedule(table, frozen_time)
        process_follow_ups(FakeDispatcher(fail_with="bounced"), now=frozen_time)

        today = utc_now().date()
        sent = list_audit_events(today, event_type="follow_up_sent")
        failed = list_audit_events(today, event_type="follow_up_failed")
        assert len(sent) == 1
        assert len(failed) == 1
        assert failed[0].severity.value == "medium"
        assert failed[0].metadata["attempt_count"] == 1


class TestRetrySelection:
    """Failed rows come back once their backoff has elapsed."""

    def test_failed_row_not_selected_before_backoff(self, seeded_directory, failing_dispatcher, frozen_time):
        _put_schedule(seeded_directory["table"], frozen_time)
        process_follow_ups(failing_dispatcher, now=frozen_time)

        result = process_follow_ups(failing_dispatcher, now=frozen_time + 4 * HOUR - 1)

        assert result.total == 0
        assert failing_dispatcher.call_count == 1

    def test_failed_row_retried_after_backoff(self, seeded_directory, frozen_time):
        schedule = _put_schedule(seeded_directory["table"], frozen_time)
        process_follow_ups(FakeDispatcher(fail_with="bounced"), now=frozen_time)

        dispatcher = FakeDispatcher()
        result = process_follow_ups(dispatcher, now=frozen_time + 4 * HOUR)

        assert result.processed == 1
        assert dispatcher.sent[0]["data"]["reminderNumber"] == 2
        stored = load_follow_up(schedule.follow_up_id)
        assert stored.status == FollowUpStatus.SENT
        assert stored.attempt_count == 2
        assert stored.last_error is None

    def test_attempts_never_exceed_max(self, seeded_directory, failing_dispatcher, frozen_time):
        schedule = _put_schedule(seeded_directory["table"], frozen_time)

        for run in range(6):
            process_follow_ups(failing_dispatcher, now=frozen_time + run * 5 * HOUR)

        stored = load_follow_up(schedule.follow_up_id)
        assert stored.attempt_count == 3
        assert stored.status == FollowUpStatus.FAILED
        assert failing_dispatcher.call_count == 3

    def test_future_schedule_not_selected(self, seeded_directory, dispatcher, frozen_time):
        _put_schedule(seeded_directory["table"], frozen_time, scheduled_for=frozen_time + 1)

        assert process_follow_ups(dispatcher, now=frozen_time).total == 0
        assert process_follow_ups(dispatcher, now=frozen_time + 1).processed == 1

    def test_selection_is_oldest_first(self, seeded_directory, frozen_time):
        table = seeded_directory["table"]
        late = _put_schedule(table, frozen_time, scheduled_for=frozen_time - HOUR)
        early = _put_schedule(table, frozen_time, scheduled_for=frozen_time - 2 * DAY)
        retry = _put_schedule(
            table,
            frozen_time,
            status=FollowUpStatus.FAILED,
            attempt_count=1,
            next_attempt_at=frozen_time - DAY,
        )

        selected = select_due_follow_ups(frozen_time, 20)

        assert [d.follow_up_id for d in selected] == [
            early.follow_up_id,
            retry.follow_up_id,
            late.follow_up_id,
        ]


class TestBatching:
    def test_batch_size_bounds_a_run(self, seeded_directory, dispatcher, frozen_time):
        table = seeded_directory["table"]
        for i in range(25):
            _put_schedule(table, frozen_time, scheduled_for=frozen_time - DAY + i)

        first = process_follow_ups(dispatcher, now=frozen_time)
        second = process_follow_ups(dispatcher, now=frozen_time)

        assert first.total == 20
        assert first.processed == 20
        assert second.total == 5
        assert dispatcher.call_count == 25

    def test_explicit_batch_size(self, seeded_directory, dispatcher, frozen_time):
        table = seeded_directory["table"]
        for _ in range(4):
            _put_schedule(table, frozen_time)

        result = process_follow_ups(dispatcher, now=frozen_time, batch_size=3)

        assert result.total == 3
        assert dispatcher.call_count == 3

    def test_item_failure_does_not_abort_batch(self, seeded_directory, dispatcher, frozen_time):
        table = seeded_directory["table"]
        orphan = _put_schedule(table, frozen_time, assistance_id="ast-missing", scheduled_for=frozen_time - 2 * DAY)
        healthy = _put_schedule(table, frozen_time)

        result = process_follow_ups(dispatcher, now=frozen_time)

        assert result.to_response() == {"success": True, "processed": 1, "errors": 1, "total": 2}
        assert load_follow_up(orphan.follow_up_id).status == FollowUpStatus.FAILED
        assert "ast-missing" in load_follow_up(orphan.follow_up_id).last_error
        assert load_follow_up(healthy.follow_up_id).status == FollowUpStatus.SENT

    def test_selection_failure_aborts_run(self, seeded_directory, dispatcher, frozen_time):
        _put_schedule(seeded_directory["table"], frozen_time)
        failure = PersistenceError("query", "TestMaintenancePortal", "index unavailable")

        with patch("maintenance.followups.processor.query_all", side_effect=failure):
            result = process_follow_ups(dispatcher, now=frozen_time)

        body = result.to_response()
        assert body["success"] is False
        assert "index unavailable" in body["error"]
        assert body["total"] == 0
        assert dispatcher.call_count == 0

    def test_selection_transport_error_aborts_run(self, seeded_directory, dispatcher, frozen_time):
        _put_schedule(seeded_directory["table"], frozen_time)
        table = MagicMock()
        table.query.side_effect = EndpointConnectionError(endpoint_url="https://dynamodb.us-west-2.amazonaws.com")

        with patch("maintenance.shared.tools.dynamodb.get_table", return_value=table):
            result = process_follow_ups(dispatcher, now=frozen_time)

        assert result.success is False
        assert "dynamodb.us-west-2.amazonaws.com" in result.error
        assert dispatcher.call_count == 0

    def test_audit_timeout_does_not_abort_batch(self, seeded_directory, dispatcher, frozen_time):
        table = seeded_directory["table"]
        first = _put_schedule(table, frozen_time, scheduled_for=frozen_time - 2 * DAY)
        second = _put_schedule(table, frozen_time)
        audit_table = MagicMock()
        audit_table.put_item.side_effect = ReadTimeoutError(endpoint_url="https://dynamodb.us-west-2.amazonaws.com")

        with patch("maintenance.shared.tools.audit.get_table", return_value=audit_table):
            result = process_follow_ups(dispatcher, now=frozen_time)

        assert result.to_response() == {"success": True, "processed": 2, "errors": 0, "total": 2}
        assert load_follow_up(first.follow_up_id).status == FollowUpStatus.SENT
        assert load_follow_up(second.follow_up_id).status == FollowUpStatus.SENT

    def test_empty_run(self, mock_dynamodb, dispatcher, frozen_time):
        assert process_follow_ups(dispatcher, now=frozen_time) == ProcessingResult(success=True)


class TestClaims:
    """The conditional claim is what keeps runs from double-sending."""

    def test_claim_lost_after_cancel(self, seeded_directory, frozen_time):
        schedule = _put_schedule(seeded_directory["table"], frozen_time)
        due = select_due_follow_ups(frozen_time, 20)[0]

        cancel_follow_up(schedule.follow_up_id, now=frozen_time)

        assert claim_follow_up(due, frozen_time) is False
        assert load_follow_up(schedule.follow_up_id).status == FollowUpStatus.CANCELLED

    def test_second_claim_of_same_observation_loses(self, seeded_directory, frozen_time):
        _put_schedule(seeded_directory["table"], frozen_time)
        due = select_due_follow_ups(frozen_time, 20)[0]

        assert claim_follow_up(due, frozen_time) is True
        assert claim_follow_up(due, frozen_time) is False

    def test_claim_rejects_exhausted_row(self, seeded_directory, frozen_time):
        schedule = _put_schedule(seeded_directory["table"], frozen_time, attempt_count=3, max_attempts=3)
        due = DueFollowUp.from_item(_raw(seeded_directory["table"], schedule.follow_up_id))

        assert claim_follow_up(due, frozen_time) is False

    def test_overlapping_runs_never_double_send(self, seeded_directory, frozen_time):
        table = seeded_directory["table"]
        schedules = [_put_schedule(table, frozen_time, scheduled_for=frozen_time - DAY + i) for i in range(3)]
        inner_dispatcher = FakeDispatcher()
        inner_results: list[ProcessingResult] = []

        def start_overlapping_run(template, data):
            if not inner_results:
                inner_results.append(process_follow_ups(inner_dispatcher, now=frozen_time))

        outer_dispatcher = FakeDispatcher(on_send=start_overlapping_run)
        outer = process_follow_ups(outer_dispatcher, now=frozen_time)
        inner = inner_results[0]

        assert outer_dispatcher.call_count + inner_dispatcher.call_count == 3
        assert outer.processed + inner.processed == 3
        assert outer.skipped == 2
        for schedule in schedules:
            stored = load_follow_up(schedule.follow_up_id)
            assert stored.status == FollowUpStatus.SENT
            assert stored.attempt_count == 1

    def test_cancel_during_dispatch_keeps_cancelled(self, seeded_directory, frozen_time):
        schedule = _put_schedule(seeded_directory["table"], frozen_time)
        dispatcher = FakeDispatcher(
            on_send=lambda template, data: cancel_follow_up(schedule.follow_up_id, now=frozen_time)
        )

        result = process_follow_ups(dispatcher, now=frozen_time)

        assert result.skipped == 1
        assert result.processed == 0
        assert load_follow_up(schedule.follow_up_id).status == FollowUpStatus.CANCELLED


class TestStaleClaimRecovery:
    def test_abandoned_claim_becomes_failed_attempt(self, seeded_directory, dispatcher, frozen_time):
        schedule = _put_schedule(
            seeded_directory["table"],
            frozen_time,
            status=FollowUpStatus.PROCESSING,
            claimed_at=frozen_time - 31 * 60,
        )

        result = process_follow_ups(dispatcher, now=frozen_time)

        assert result.recovered == 1
        assert result.total == 0
        stored = load_follow_up(schedule.follow_up_id)
        assert stored.status == FollowUpStatus.FAILED
        assert stored.attempt_count == 1
        assert stored.next_attempt_at == frozen_time + 4 * HOUR
        assert stored.claimed_at is None

    def test_recent_claim_left_alone(self, seeded_directory, dispatcher, frozen_time):
        schedule = _put_schedule(
            seeded_directory["table"],
            frozen_time,
            status=FollowUpStatus.PROCESSING,
            claimed_at=frozen_time - 5 * 60,
        )

        result = process_follow_ups(dispatcher, now=frozen_time)

        assert result.recovered == 0
        assert load_follow_up(schedule.follow_up_id).status == FollowUpStatus.PROCESSING


class TestReminderPayloads:
    """Each follow-up type renders its own template."""

    def test_work_reminder_payload(self, seeded_directory, dispatcher, frozen_time):
        create_follow_up(
            "work_reminder",
            "ast-001",
            "sup-001",
            frozen_time - HOUR,
            priority="urgent",
            metadata={"work_date": "2025-02-10", "notes": "Ring the concierge"},
            now=frozen_time,
        )

        process_follow_ups(dispatcher, now=frozen_time)

        sent = dispatcher.sent[0]
        assert sent["to"] == "ops@rossi-plumbing.example.com"
        assert sent["template"] == "work_reminder"
        data = sent["data"]
        assert data["workDate"] == "2025-02-10"
        assert data["daysUntilWork"] == 4
        assert data["isUrgent"] is True
        assert data["notes"] == "Ring the concierge"
        assert data["assistanceDetails"]["buildingName"] == "Condominium Aurora"
        assert data["portalUrl"].endswith(f"code={data['magicCode']}")

    def test_completion_reminder_payload(self, seeded_directory, dispatcher, frozen_time):
        _put_schedule(
            seeded_directory["table"],
            frozen_time,
            follow_up_type=FollowUpType.COMPLETION_REMINDER,
            metadata=CompletionReminderMetadata(expected_completion=date(2025, 2, 1)),
        )

        process_follow_ups(dispatcher, now=frozen_time)

        sent = dispatcher.sent[0]
        assert sent["template"] == "completion_reminder"
        assert sent["data"]["daysOverdue"] == 5
        assert sent["data"]["isOverdue"] is True
        assert "5 days overdue" in sent["subject"]

    def test_quotation_deadline_falls_back_to_assistance(self, seeded_directory, dispatcher, frozen_time):
        create_follow_up("quotation_reminder", "ast-001", "sup-001", frozen_time - HOUR, now=frozen_time)

        process_follow_ups(dispatcher, now=frozen_time)

        assert dispatcher.sent[0]["data"]["quotationDeadline"] == "2025-02-08"

    def test_date_confirmation_payload(self, seeded_directory, dispatcher, frozen_time):
        create_follow_up(
            "date_confirmation",
            "ast-001",
            "sup-001",
            frozen_time - HOUR,
            metadata={"proposed_start_date": "2025-02-12"},
            now=frozen_time,
        )

        process_follow_ups(dispatcher, now=frozen_time)

        assert dispatcher.sent[0]["template"] == "date_confirmation"
        assert dispatcher.sent[0]["data"]["proposedStartDate"] == "2025-02-12"

    def test_reminders_share_one_portal_code(self, seeded_directory, dispatcher, frozen_time):
        table = seeded_directory["table"]
        for _ in range(2):
            _put_schedule(table, frozen_time)

        process_follow_ups(dispatcher, now=frozen_time)

        codes = {s["data"]["magicCode"] for s in dispatcher.sent}
        assert len(codes) == 1

    def test_unknown_type_is_a_dispatch_failure(self, seeded_directory, dispatcher, frozen_time):
        table = seeded_directory["table"]
        schedule = _put_schedule(table, frozen_time)
        table.update_item(
            Key=FollowUpKey(schedule.follow_up_id).to_key(),
            UpdateExpression="SET follow_up_type = :t",
            ExpressionAttributeValues={":t": "invoice_reminder"},
        )

        result = process_follow_ups(dispatcher, now=frozen_time)

        assert result.errors == 1
        assert dispatcher.call_count == 0
        assert _raw(table, schedule.follow_up_id)["status"] == "failed"
