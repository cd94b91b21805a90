"""
Tests for the Consent Ledger.

Test Coverage:
1. update() appends a log row and sets the current flag together
2. check() for unknown / deleted customers
3. history() ordering and channel filter
4. verify() flag-vs-log consistency
"""
import pytest
from datetime import datetime, timedelta

from lifecycle_engine.models.db_models import (
    CustomerDB,
    MarketingConsentLogDB,
    ConsentChannel,
    ConsentAction,
    ConsentSource,
)
from lifecycle_engine.services.lifecycle.consent_ledger import ConsentLedger, ConsentLedgerError

from conftest import make_customer


class TestConsentUpdate:

    def test_opt_out_sets_flag_and_logs(self, db_session, now):
        customer = make_customer(db_session, sms_consent=True)
        ledger = ConsentLedger(db_session)

        entry = ledger.update(
            customer.id, ConsentChannel.SMS, ConsentAction.OPT_OUT,
            ConsentSource.SMS_KEYWORD, at=now,
        )
        db_session.commit()

        assert entry.previous_value is True
        assert entry.new_value is False
        assert ledger.check(customer.id, ConsentChannel.SMS) is False
        assert db_session.query(MarketingConsentLogDB).count() == 1

    def test_channels_are_independent(self, db_session, now):
        customer = make_customer(db_session, sms_consent=False)
        ledger = ConsentLedger(db_session)

        ledger.update(customer.id, "email", "opt_in", "customer_portal", at=now)
        db_session.commit()

        assert ledger.check(customer.id, ConsentChannel.EMAIL) is True
        assert ledger.check(customer.id, ConsentChannel.SMS) is False

    def test_repeated_statement_is_still_logged(self, db_session, now):
        customer = make_customer(db_session, sms_consent=False)
        ledger = ConsentLedger(db_session)

        ledger.update(customer.id, ConsentChannel.SMS, ConsentAction.OPT_IN, ConsentSource.BOOKING_FORM, at=now)
        ledger.update(
            customer.id, ConsentChannel.SMS, ConsentAction.OPT_IN, ConsentSource.POS,
            at=now + timedelta(minutes=1),
        )
        db_session.commit()

        assert len(ledger.history(customer.id)) == 2

    def test_unknown_customer_raises(self, db_session):
        with pytest.raises(ConsentLedgerError):
            ConsentLedger(db_session).update(
                "missing", ConsentChannel.SMS, ConsentAction.OPT_IN, ConsentSource.MANUAL,
            )

    def test_backdated_entry_rejected(self, db_session, now):
        """An entry older than the latest one would leave the flag out of step with the log"""
        customer = make_customer(db_session, sms_consent=True)
        ledger = ConsentLedger(db_session)
        ledger.update(customer.id, "sms", "opt_out", "sms_keyword", at=now)

        with pytest.raises(ConsentLedgerError):
            ledger.update(customer.id, "sms", "opt_in", "manual", at=now - timedelta(hours=1))
        db_session.commit()

        assert ledger.check(customer.id, ConsentChannel.SMS) is False
        assert len(ledger.history(customer.id)) == 1
        assert ledger.verify(customer.id)["consistent"] is True

    def test_same_timestamp_rejected(self, db_session, now):
        customer = make_customer(db_session, sms_consent=False)
        ledger = ConsentLedger(db_session)
        ledger.update(customer.id, "sms", "opt_in", "booking_form", at=now)

        with pytest.raises(ConsentLedgerError):
            ledger.update(customer.id, "sms", "opt_out", "sms_keyword", at=now)

    def test_backdating_is_per_channel(self, db_session, now):
        customer = make_customer(db_session, sms_consent=False)
        ledger = ConsentLedger(db_session)
        ledger.update(customer.id, "sms", "opt_in", "booking_form", at=now)

        ledger.update(customer.id, "email", "opt_in", "booking_form", at=now - timedelta(days=1))

        assert ledger.check(customer.id, ConsentChannel.EMAIL) is True

    def test_server_stamp_behind_latest_sorts_last(self, db_session, now):
        """Clock skew: an unstamped entry still becomes the most recent one"""
        customer = make_customer(db_session, sms_consent=False)
        ledger = ConsentLedger(db_session)
        future = datetime.utcnow() + timedelta(days=1)
        ledger.update(customer.id, "sms", "opt_in", "booking_form", at=future)

        entry = ledger.update(customer.id, "sms", "opt_out", "sms_keyword")
        db_session.commit()

        assert entry.created_at > future
        assert ledger.latest_entry(customer.id, ConsentChannel.SMS).id == entry.id
        assert ledger.verify(customer.id)["channels"]["sms"] == {
            "current": False, "logged": False, "consistent": True,
        }

    def test_invalid_channel_raises(self, db_session):
        customer = make_customer(db_session)
        with pytest.raises(ValueError):
            ConsentLedger(db_session).update(customer.id, "fax", "opt_in", "manual")


class TestConsentCheck:

    def test_unknown_customer_has_no_consent(self, db_session):
        assert ConsentLedger(db_session).check("missing", ConsentChannel.SMS) is False

    def test_deleted_customer_has_no_consent(self, db_session, now):
        customer = make_customer(db_session, sms_consent=True, deleted_at=now)
        assert ConsentLedger(db_session).check(customer.id, ConsentChannel.SMS) is False


class TestConsentHistory:

    def test_history_is_oldest_first_and_filterable(self, db_session, now):
        customer = make_customer(db_session, sms_consent=False)
        ledger = ConsentLedger(db_session)
        ledger.update(customer.id, "sms", "opt_in", "booking_form", at=now - timedelta(days=10))
        ledger.update(customer.id, "email", "opt_in", "booking_form", at=now - timedelta(days=9))
        ledger.update(customer.id, "sms", "opt_out", "sms_keyword", at=now - timedelta(days=1))
        db_session.commit()

        sms = ledger.history(customer.id, ConsentChannel.SMS)
        assert [ConsentAction(e.action) for e in sms] == [ConsentAction.OPT_IN, ConsentAction.OPT_OUT]
        assert len(ledger.history(customer.id)) == 3

    def test_verify_reports_consistent_ledger(self, db_session, now):
        customer = make_customer(db_session, sms_consent=False)
        ledger = ConsentLedger(db_session)
        ledger.update(customer.id, "sms", "opt_in", "customer_portal", at=now)
        db_session.commit()

        result = ledger.verify(customer.id)

        assert result["consistent"] is True
        assert result["channels"]["sms"] == {"current": True, "logged": True, "consistent": True}
        assert result["channels"]["email"]["consistent"] is True

    def test_verify_detects_flag_written_outside_ledger(self, db_session):
        customer = make_customer(db_session, sms_consent=False)

        # Direct write bypassing the ledger
        db_session.query(CustomerDB).filter(CustomerDB.id == customer.id).update({"sms_consent": True})
        db_session.commit()

        result = ConsentLedger(db_session).verify(customer.id)

        assert result["consistent"] is False
        assert result["channels"]["sms"]["logged"] is False
