"""
Tests for the Lifecycle Executor (Phase 2).

Test Coverage:
1. Due executions are rendered and sent; not-yet-due rows are untouched
2. No send without current consent (skipped, reason recorded)
3. Rule inactive / review feature flag off → skipped
4. Provider failure and unexpected exceptions → failed, batch continues
5. Terminal statuses are never changed
6. Claims keep overlapping ticks from sending the same row
7. Wall-clock budget leaves the remainder pending
8. Template variables from appointment, vehicle and business settings
9. HTTP provider acknowledgement parsing (non-JSON 2xx bodies still count as sent)
"""
import pytest
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import requests

from lifecycle_engine.config import EngineConfig
from lifecycle_engine.models.db_models import (
    LifecycleExecutionDB,
    ExecutionStatus,
    ConsentChannel,
    ConsentAction,
    ConsentSource,
)
from lifecycle_engine.services.delivery import HttpSmsProvider, SendResult
from lifecycle_engine.services.lifecycle.consent_ledger import ConsentLedger
from lifecycle_engine.services.lifecycle.executor import (
    LifecycleExecutor,
    GOOGLE_REVIEW_FLAG,
    REASON_NO_CONSENT,
    REASON_NO_PHONE,
    REASON_RULE_INACTIVE,
    REASON_REVIEW_FLAG_OFF,
    setting_to_text,
)
from lifecycle_engine.services.lifecycle.template_renderer import STOP_FOOTER

from conftest import (
    make_customer,
    make_rule,
    make_appointment,
    make_execution,
    make_vehicle,
    set_business_setting,
    set_feature_flag,
)


def reload(db, execution_id):
    db.expire_all()
    return db.query(LifecycleExecutionDB).filter(LifecycleExecutionDB.id == execution_id).first()


# =============================================================================
# TEST: SENDING
# =============================================================================

class TestSend:

    def test_due_execution_is_sent(self, db_session, now, provider):
        customer = make_customer(db_session, first_name="Dana")
        rule = make_rule(db_session, sms_template="Hi {firstName}, thanks for visiting!")
        execution = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))

        counts = LifecycleExecutor(db_session, provider).run(now)

        assert counts.sent == 1
        destination, body = provider.send.call_args[0]
        assert destination == "+15125550100"
        assert body.startswith("Hi Dana, thanks for visiting!")
        assert body.endswith(STOP_FOOTER)

        row = reload(db_session, execution.id)
        assert row.status == ExecutionStatus.SENT
        assert row.executed_at == now
        assert row.provider_message_id.startswith("msg-")

    def test_future_execution_is_not_touched(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        execution = make_execution(db_session, rule, customer, scheduled_for=now + timedelta(minutes=1))

        counts = LifecycleExecutor(db_session, provider).run(now)

        assert counts.processed == 0
        provider.send.assert_not_called()
        assert reload(db_session, execution.id).status == ExecutionStatus.PENDING

    def test_oldest_due_rows_first_within_batch_size(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        oldest = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(hours=3))
        middle = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(hours=2))
        newest = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(hours=1))

        counts = LifecycleExecutor(db_session, provider, config=EngineConfig(batch_size=2)).run(now)

        assert counts.sent == 2
        assert reload(db_session, oldest.id).status == ExecutionStatus.SENT
        assert reload(db_session, middle.id).status == ExecutionStatus.SENT
        assert reload(db_session, newest.id).status == ExecutionStatus.PENDING


# =============================================================================
# TEST: GATES
# =============================================================================

class TestGates:

    def test_consent_revoked_after_scheduling_skips(self, db_session, now, provider):
        """Consent is re-checked at send time, not trusted from scheduling"""
        customer = make_customer(db_session, sms_consent=True)
        rule = make_rule(db_session)
        execution = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))

        ConsentLedger(db_session).update(
            customer.id, ConsentChannel.SMS, ConsentAction.OPT_OUT, ConsentSource.SMS_KEYWORD,
        )
        db_session.commit()

        counts = LifecycleExecutor(db_session, provider).run(now)

        assert counts.skipped == 1
        provider.send.assert_not_called()
        row = reload(db_session, execution.id)
        assert row.status == ExecutionStatus.SKIPPED
        assert row.error_message == REASON_NO_CONSENT
        assert row.executed_at is None

    def test_missing_phone_skips(self, db_session, now, provider):
        customer = make_customer(db_session, phone="12")
        rule = make_rule(db_session)
        execution = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))

        LifecycleExecutor(db_session, provider).run(now)

        row = reload(db_session, execution.id)
        assert row.status == ExecutionStatus.SKIPPED
        assert row.error_message == REASON_NO_PHONE

    def test_inactive_rule_skips(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        execution = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))
        rule.is_active = False
        db_session.commit()

        LifecycleExecutor(db_session, provider).run(now)

        row = reload(db_session, execution.id)
        assert row.status == ExecutionStatus.SKIPPED
        assert row.error_message == REASON_RULE_INACTIVE
        provider.send.assert_not_called()

    def test_review_template_skipped_when_flag_off(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session, sms_template="Leave us a review: {googleReviewLink}")
        execution = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))
        set_feature_flag(db_session, GOOGLE_REVIEW_FLAG, False)

        LifecycleExecutor(db_session, provider).run(now)

        row = reload(db_session, execution.id)
        assert row.status == ExecutionStatus.SKIPPED
        assert row.error_message == REASON_REVIEW_FLAG_OFF

    def test_review_link_shortened_once_per_batch(self, db_session, now, provider, short_links):
        rule = make_rule(db_session, sms_template="Leave us a review: {googleReviewLink}")
        set_feature_flag(db_session, GOOGLE_REVIEW_FLAG, True)
        set_business_setting(db_session, "google_review_url", "https://g.page/r/long-review-url")
        for _ in range(3):
            make_execution(db_session, rule, make_customer(db_session), scheduled_for=now - timedelta(minutes=5))

        counts = LifecycleExecutor(db_session, provider, short_links).run(now)

        assert counts.sent == 3
        short_links.create.assert_called_once_with("https://g.page/r/long-review-url")
        for call in provider.send.call_args_list:
            assert "https://sho.rt/abc" in call[0][1]

    def test_shortening_failure_falls_back_to_long_url(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session, sms_template="Review us: {googleReviewLink}")
        make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))
        set_feature_flag(db_session, GOOGLE_REVIEW_FLAG, True)
        set_business_setting(db_session, "google_review_url", "https://g.page/r/long-review-url")

        broken = MagicMock()
        broken.create.side_effect = RuntimeError("short link API down")

        counts = LifecycleExecutor(db_session, provider, broken).run(now)

        assert counts.sent == 1
        assert "https://g.page/r/long-review-url" in provider.send.call_args[0][1]


# =============================================================================
# TEST: FAILURES & TERMINAL STATES
# =============================================================================

class TestFailures:

    def test_provider_rejection_marks_failed(self, db_session, now):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        execution = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))

        provider = MagicMock()
        provider.send.return_value = SendResult(success=False, error="Invalid destination")

        counts = LifecycleExecutor(db_session, provider).run(now)

        assert counts.failed == 1
        row = reload(db_session, execution.id)
        assert row.status == ExecutionStatus.FAILED
        assert row.error_message == "Invalid destination"
        assert row.executed_at == now

    def test_exception_fails_row_and_batch_continues(self, db_session, now):
        rule = make_rule(db_session)
        first = make_execution(db_session, rule, make_customer(db_session), scheduled_for=now - timedelta(minutes=10))
        second = make_execution(db_session, rule, make_customer(db_session), scheduled_for=now - timedelta(minutes=5))

        provider = MagicMock()
        provider.send.side_effect = [
            ConnectionError("socket closed"),
            SendResult(success=True, provider_message_id="msg-2"),
        ]

        counts = LifecycleExecutor(db_session, provider).run(now)

        assert counts.failed == 1
        assert counts.sent == 1
        assert reload(db_session, first.id).status == ExecutionStatus.FAILED
        assert "socket closed" in reload(db_session, first.id).error_message
        assert reload(db_session, second.id).status == ExecutionStatus.SENT

    def test_terminal_status_is_never_overwritten(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        execution = make_execution(
            db_session, rule, customer,
            scheduled_for=now - timedelta(minutes=5),
            status=ExecutionStatus.SENT,
            executed_at=now - timedelta(minutes=4),
        )

        executor = LifecycleExecutor(db_session, provider)
        applied = executor.mark_execution(execution.id, ExecutionStatus.FAILED, now, error_message="late")

        assert applied is False
        row = reload(db_session, execution.id)
        assert row.status == ExecutionStatus.SENT
        assert row.error_message is None

    def test_pending_is_not_a_terminal_status(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        execution = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))

        with pytest.raises(ValueError):
            LifecycleExecutor(db_session, provider).mark_execution(execution.id, ExecutionStatus.PENDING, now)
        assert reload(db_session, execution.id).status == ExecutionStatus.PENDING

    def test_terminal_rows_are_not_selected_again(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))

        executor = LifecycleExecutor(db_session, provider)
        executor.run(now)
        second = executor.run(now + timedelta(minutes=5))

        assert second.processed == 0
        assert provider.send.call_count == 1


# =============================================================================
# TEST: HTTP PROVIDER
# =============================================================================

PROVIDER_POST = "lifecycle_engine.services.delivery.sms_provider.requests.post"


def http_response(status_code=200, content=b"", json_value=None, json_error=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = content
    response.text = content.decode()
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = json_value
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


def http_provider():
    return HttpSmsProvider(url="https://sms.example.com/messages", token="t", from_number="+15125550000")


class TestHttpSmsProvider:

    def test_json_message_id_is_returned(self):
        with patch(PROVIDER_POST, return_value=http_response(201, b"{}", {"sid": "SM123"})) as post:
            result = http_provider().send("+15125550100", "Hi")

        assert result.success is True
        assert result.provider_message_id == "SM123"
        assert post.call_args[1]["json"] == {"to": "+15125550100", "from": "+15125550000", "body": "Hi"}

    def test_accepted_with_plain_text_body(self):
        response = http_response(202, b"Queued", json_error=ValueError("Expecting value"))
        with patch(PROVIDER_POST, return_value=response):
            result = http_provider().send("+15125550100", "Hi")

        assert result.success is True
        assert result.provider_message_id is None

    def test_accepted_with_json_list_body(self):
        with patch(PROVIDER_POST, return_value=http_response(200, b"[]", [])):
            result = http_provider().send("+15125550100", "Hi")

        assert result.success is True
        assert result.provider_message_id is None

    def test_http_error_is_failure(self):
        with patch(PROVIDER_POST, return_value=http_response(400, b"bad number")):
            result = http_provider().send("+15125550100", "Hi")

        assert result.success is False
        assert "400" in result.error

    def test_plain_text_acceptance_marks_row_sent(self, db_session, now):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        execution = make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))

        response = http_response(202, b"Queued", json_error=ValueError("Expecting value"))
        with patch(PROVIDER_POST, return_value=response) as post:
            counts = LifecycleExecutor(db_session, http_provider()).run(now)

        assert post.call_count == 1
        assert counts.sent == 1
        assert counts.failed == 0
        row = reload(db_session, execution.id)
        assert row.status == ExecutionStatus.SENT
        assert row.error_message is None


# =============================================================================
# TEST: CLAIMS & BUDGET
# =============================================================================

class TestClaimsAndBudget:

    def test_row_claimed_by_another_tick_is_left_alone(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        execution = make_execution(
            db_session, rule, customer,
            scheduled_for=now - timedelta(minutes=5),
            claimed_by="other-worker",
            claimed_at=now - timedelta(minutes=1),
        )

        counts = LifecycleExecutor(db_session, provider).run(now)

        assert counts.claimed_elsewhere == 1
        provider.send.assert_not_called()
        assert reload(db_session, execution.id).status == ExecutionStatus.PENDING

    def test_stale_claim_is_taken_over(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        execution = make_execution(
            db_session, rule, customer,
            scheduled_for=now - timedelta(hours=1),
            claimed_by="crashed-worker",
            claimed_at=now - timedelta(minutes=30),
        )

        counts = LifecycleExecutor(db_session, provider, worker_id="worker-b").run(now)

        assert counts.sent == 1
        assert reload(db_session, execution.id).claimed_by == "worker-b"

    def test_expired_budget_leaves_rows_pending(self, db_session, now, provider):
        customer = make_customer(db_session)
        rule = make_rule(db_session)
        rows = [
            make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=m))
            for m in (15, 10, 5)
        ]

        counts = LifecycleExecutor(db_session, provider).run(now, deadline=time.monotonic() - 1)

        assert counts.deferred == 3
        assert counts.processed == 0
        for row in rows:
            assert reload(db_session, row.id).status == ExecutionStatus.PENDING


# =============================================================================
# TEST: TEMPLATE VARIABLES
# =============================================================================

class TestVariables:

    def test_service_vehicle_and_business_variables(self, db_session, now, provider):
        customer = make_customer(db_session, first_name="Sam")
        vehicle = make_vehicle(db_session, customer, year=2021, make="Toyota", model="Tacoma")
        apt = make_appointment(
            db_session, customer, now - timedelta(hours=2),
            services=[("svc-1", "Full Detail")],
            vehicle_id=vehicle.id,
        )
        set_business_setting(db_session, "business_name", '"Shine Auto Spa"')
        rule = make_rule(
            db_session,
            sms_template="Hi {firstName}! Your {vehicleInfo} looks great after the {serviceName}. - {businessName}",
        )
        make_execution(
            db_session, rule, customer,
            scheduled_for=now - timedelta(minutes=5),
            appointment_id=apt.id,
        )

        LifecycleExecutor(db_session, provider).run(now)

        body = provider.send.call_args[0][1]
        assert "Hi Sam!" in body
        assert "2021 Toyota Tacoma" in body
        assert "Full Detail" in body
        assert "Shine Auto Spa" in body
        assert '"' not in body

    def test_missing_first_name_uses_default(self, db_session, now, provider):
        customer = make_customer(db_session, first_name=None)
        rule = make_rule(db_session, sms_template="Hi {firstName}, thanks!")
        make_execution(db_session, rule, customer, scheduled_for=now - timedelta(minutes=5))

        LifecycleExecutor(db_session, provider).run(now)

        assert provider.send.call_args[0][1].startswith("Hi there, thanks!")

    def test_setting_to_text_strips_json_quotes(self):
        assert setting_to_text('"Open 9-5"') == "Open 9-5"
        assert setting_to_text(4.8) == "4.8"
        assert setting_to_text(None) == ""
