"""
Tests for the credit ledger.
"""
import pytest

from upscaler.config import get_settings
from upscaler.ledger import InsufficientCreditsError, LedgerError, get_or_create_profile
from upscaler.models.transaction import CreditTransaction


@pytest.fixture
def profile(db):
    return get_or_create_profile(db, "user-1", email="u@example.com")


class TestProfiles:

    def test_signup_bonus(self, profile):
        assert profile.credits == get_settings().signup_bonus_credits

    def test_existing_profile_returned(self, db, profile):
        again = get_or_create_profile(db, "user-1")
        assert again.id == profile.id
        assert again.email == "u@example.com"


class TestDebit:

    def test_debit_updates_balance_and_logs_usage(self, ledger, profile):
        row = ledger.debit("user-1", 7, "Used 7 credits for upscaling a.png (4x)", reference="b1:j1")
        assert row.type == "usage"
        assert row.amount == -7
        assert ledger.balance("user-1") == 93

    def test_debit_is_idempotent_on_reference(self, ledger, profile, db):
        first = ledger.debit("user-1", 5, "first", reference="b1:j1")
        second = ledger.debit("user-1", 5, "again", reference="b1:j1")
        assert first.id == second.id
        assert ledger.balance("user-1") == 95
        assert db.query(CreditTransaction).count() == 1

    def test_debit_without_reference_always_applies(self, ledger, profile):
        ledger.debit("user-1", 1, "one")
        ledger.debit("user-1", 1, "two")
        assert ledger.balance("user-1") == 98

    def test_insufficient_credits(self, ledger, profile):
        with pytest.raises(InsufficientCreditsError) as exc:
            ledger.debit("user-1", 500, "too much")
        assert exc.value.required == 500
        assert exc.value.available == 100
        assert ledger.balance("user-1") == 100

    def test_unknown_profile(self, ledger):
        with pytest.raises(LedgerError):
            ledger.debit("ghost", 1, "nobody")

    def test_amount_must_be_positive(self, ledger, profile):
        with pytest.raises(ValueError):
            ledger.debit("user-1", 0, "nothing")


class TestCredit:

    def test_purchase_is_idempotent_on_session(self, ledger, profile):
        ledger.credit("user-1", 50, "Purchased 50 credits via Stripe (starter)", stripe_session_id="cs_1")
        ledger.credit("user-1", 50, "Purchased 50 credits via Stripe (starter)", stripe_session_id="cs_1")
        assert ledger.balance("user-1") == 150

    def test_credit_creates_missing_profile(self, ledger):
        ledger.credit("new-user", 100, "Purchased 100 credits via Stripe (popular)", stripe_session_id="cs_2")
        assert ledger.balance("new-user") == get_settings().signup_bonus_credits + 100

    def test_refund_type(self, ledger, profile):
        row = ledger.credit("user-1", 3, "Refund", kind="refund")
        assert row.type == "refund"
        with pytest.raises(ValueError):
            ledger.credit("user-1", 3, "bogus", kind="usage")

    def test_history_newest_first(self, ledger, profile):
        ledger.credit("user-1", 50, "p1", stripe_session_id="cs_a")
        ledger.debit("user-1", 2, "u1", reference="r1")
        ledger.debit("user-1", 3, "u2", reference="r2")
        rows = ledger.transactions("user-1", limit=2)
        assert len(rows) == 2
        assert rows[0].created_at >= rows[1].created_at
        assert {r.description for r in ledger.transactions("user-1")} == {"p1", "u1", "u2"}
