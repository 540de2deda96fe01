"""Tests for services.billing -- monthly summaries and payment records."""

import pandas as pd
import pytest

from conftest import MOON_ID, SUN_ID, send_row
from laundry_backend import core
from laundry_backend.models import BillingStatus
from laundry_backend.services import billing
from laundry_backend.services.common import normalize_hotel_name
from laundry_backend.services.errors import Forbidden, InvalidInput, NotFound


@pytest.fixture
def may_sends(hotels, seed):
    seed(
        "email_sends",
        # the same dispatch mailed twice
        send_row("es-1", "2024-05-09", 100.0, 40.0, 5.0, sent_at="2024-05-09T18:00:00"),
        send_row("es-2", "2024-05-09", 100.0, 40.0, 5.0, sent_at="2024-05-10T09:30:00"),
        send_row("es-3", "2024-05-20", 50.0, 20.0, 0.0),
        send_row("es-4", "2024-04-02", 70.0, 30.0, 0.0),
        send_row("es-moon", "2024-05-09", 999.0, hotel="Hotel Moon"),
    )


# ============================================================================
# Hotel name normalization
# ============================================================================

class TestNormalization:
    def test_whitespace_and_case(self):
        assert normalize_hotel_name("  Hotel   Sun ") == normalize_hotel_name("hotel sun")

    def test_tabs_collapse(self):
        assert normalize_hotel_name("Hotel\tSun") == "hotel sun"

    def test_empty(self):
        assert normalize_hotel_name(None) == ""
        assert normalize_hotel_name("   ") == ""


# ============================================================================
# Monthly summaries
# ============================================================================

class TestMonthlySummaries:
    def test_total_counts_every_resend(self, may_sends, sun_tenant):
        summaries = core.get_monthly_invoices(SUN_ID, actor=sun_tenant)
        may = next(s for s in summaries if s.month == "2024-05")
        assert may.total_amount == 250.0

    def test_resends_collapse_into_one_detail(self, may_sends, sun_tenant):
        may = core.get_monthly_invoices(SUN_ID, "2024-05", sun_tenant)[0]
        assert len(may.invoice_details) == 2
        repeated = next(d for d in may.invoice_details if d.send_count == 2)
        assert repeated.date == "2024-05-09"
        assert repeated.amount == 100.0
        assert sorted(repeated.email_send_ids) == ["es-1", "es-2"]
        assert repeated.sent_at == pd.Timestamp("2024-05-10T09:30:00").to_pydatetime()

    def test_months_descending(self, may_sends, sun_tenant):
        months = [s.month for s in core.get_monthly_invoices(SUN_ID, actor=sun_tenant)]
        assert months == ["2024-05", "2024-04"]

    def test_month_filter(self, may_sends, sun_tenant):
        summaries = core.get_monthly_invoices(SUN_ID, "2024-04", sun_tenant)
        assert [s.month for s in summaries] == ["2024-04"]
        assert summaries[0].total_amount == 70.0

    def test_messy_hotel_name_joins_the_same_month(self, may_sends, seed, sun_tenant):
        seed("email_sends", send_row("es-5", "2024-05-25", 30.0, hotel="  HOTEL   sun "))
        may = core.get_monthly_invoices(SUN_ID, "2024-05", sun_tenant)[0]
        assert may.total_amount == 280.0
        assert any(d.email_send_ids == ["es-5"] for d in may.invoice_details)

    def test_other_hotels_excluded(self, may_sends, sun_tenant):
        summaries = core.get_monthly_invoices(SUN_ID, "2024-05", sun_tenant)
        assert all("es-moon" not in d.email_send_ids for d in summaries[0].invoice_details)

    def test_ledger_payment_counts_towards_paid(self, may_sends, seed, sun_tenant):
        seed("invoices", {"id": "inv-1", "customer_name": "hotel sun", "amount": 250.0,
                          "paid_amount": 100.0, "created_at": "2024-05-15"})
        may = core.get_monthly_invoices(SUN_ID, "2024-05", sun_tenant)[0]
        assert may.paid_amount == 100.0
        assert may.remaining_amount == 150.0
        assert may.status is BillingStatus.PENDING

    def test_remaining_and_status_invariants(self, may_sends, seed, sun_tenant):
        seed("invoices", {"id": "inv-1", "customer_name": "Hotel Sun", "amount": 70.0,
                          "paid_amount": 70.0, "created_at": "2024-04-05"})
        for summary in core.get_monthly_invoices(SUN_ID, actor=sun_tenant):
            assert summary.remaining_amount == round(summary.total_amount - summary.paid_amount, 2)
            expected = summary.remaining_amount <= 0 and summary.total_amount > 0
            assert (summary.status is BillingStatus.PAID) == expected

    def test_no_sends(self, hotels, sun_tenant):
        assert core.get_monthly_invoices(SUN_ID, actor=sun_tenant) == []

    def test_other_tenant_forbidden(self, may_sends, moon_tenant):
        with pytest.raises(Forbidden):
            core.get_monthly_invoices(SUN_ID, actor=moon_tenant)

    def test_admin_may_read_any_hotel(self, may_sends, admin):
        assert core.get_monthly_invoices(SUN_ID, actor=admin)

    def test_unknown_hotel(self, hotels, admin):
        with pytest.raises(NotFound) as exc:
            core.get_monthly_invoices("nope", actor=admin)
        assert exc.value.code == "hotel_not_found"

    def test_pure_builder_empty_frames(self):
        assert billing.build_monthly_summaries(pd.DataFrame(), pd.DataFrame(), pd.DataFrame(), "x") == []


# ============================================================================
# Payment records
# ============================================================================

class TestUpdatePayment:
    def test_full_payment_marks_month_paid(self, may_sends, sun_tenant):
        record = core.update_payment(SUN_ID, "2024-05", 250.0, sun_tenant)
        assert record.hotel_user_id == "user-sun"
        assert record.is_paid is True

        may = core.get_monthly_invoices(SUN_ID, "2024-05", sun_tenant)[0]
        assert may.paid_amount == 250.0
        assert may.remaining_amount == 0.0
        assert may.status is BillingStatus.PAID
        assert may.is_paid is True

    def test_payment_record_overrides_ledger(self, may_sends, seed, sun_tenant):
        seed("invoices", {"id": "inv-1", "customer_name": "Hotel Sun", "amount": 250.0,
                          "paid_amount": 200.0, "created_at": "2024-05-15"})
        core.update_payment(SUN_ID, "2024-05", 50.0, sun_tenant)
        may = core.get_monthly_invoices(SUN_ID, "2024-05", sun_tenant)[0]
        assert may.paid_amount == 50.0

    def test_upsert_keeps_one_row(self, may_sends, con, sun_tenant):
        core.update_payment(SUN_ID, "2024-05", 100.0, sun_tenant)
        record = core.update_payment(SUN_ID, "2024-05", 249.995, sun_tenant)
        assert record.is_paid is True
        count = con.execute("SELECT COUNT(*) FROM payment_records").fetchone()[0]
        assert count == 1

    def test_paid_compares_whole_tetri(self, hotels, seed, sun_tenant):
        seed(
            "email_sends",
            send_row("es-a", "2024-07-01", 0.1),
            send_row("es-b", "2024-07-02", 0.2),
        )
        assert core.update_payment(SUN_ID, "2024-07", 0.3, sun_tenant).is_paid is True

    def test_partial_payment(self, may_sends, sun_tenant):
        assert core.update_payment(SUN_ID, "2024-05", 200.0, sun_tenant).is_paid is False

    def test_month_without_sends_is_never_paid(self, hotels, sun_tenant):
        assert core.update_payment(SUN_ID, "2023-01", 10.0, sun_tenant).is_paid is False

    def test_is_paid_follows_new_sends(self, may_sends, seed, sun_tenant):
        assert core.update_payment(SUN_ID, "2024-05", 250.0, sun_tenant).is_paid is True
        seed("email_sends", send_row("es-late", "2024-05-28", 30.0))
        assert core.update_payment(SUN_ID, "2024-05", 250.0, sun_tenant).is_paid is False

    @pytest.mark.parametrize("amount", [-1, "abc", None, float("nan")])
    def test_bad_amount(self, may_sends, sun_tenant, amount):
        with pytest.raises(InvalidInput) as exc:
            core.update_payment(SUN_ID, "2024-05", amount, sun_tenant)
        assert exc.value.code == "bad_amount"

    @pytest.mark.parametrize("month", ["2024-5", "2024-13", "May 2024", ""])
    def test_bad_month(self, may_sends, sun_tenant, month):
        with pytest.raises(InvalidInput) as exc:
            core.update_payment(SUN_ID, month, 10.0, sun_tenant)
        assert exc.value.code == "bad_month"

    def test_hotel_without_user(self, hotels, admin):
        with pytest.raises(InvalidInput) as exc:
            core.update_payment("hotel-legal", "2024-05", 10.0, admin)
        assert exc.value.code == "hotel_without_user"

    def test_other_tenant_forbidden(self, may_sends, moon_tenant):
        with pytest.raises(Forbidden):
            core.update_payment(SUN_ID, "2024-05", 10.0, moon_tenant)

    def test_payments_are_per_hotel(self, may_sends, moon_tenant, sun_tenant):
        core.update_payment(MOON_ID, "2024-05", 999.0, moon_tenant)
        may = core.get_monthly_invoices(SUN_ID, "2024-05", sun_tenant)[0]
        assert may.paid_amount == 0.0
