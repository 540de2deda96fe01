"""Tests for services.reconciliation -- invoice to email-send matching.

Covers:
- Pinned tolerance constants
- Pure matchers over frames (invoice window, fallback, descriptor)
- Strategy order and the stored confirmation path
- Idempotency: a second confirmation is AlreadyConfirmed, never a recount
- Tenant isolation and the NotFound codes
"""

from datetime import datetime

import pandas as pd
import pytest

from conftest import send_row
from laundry_backend import core
from laundry_backend.models import Invoice
from laundry_backend.services import data_layer, reconciliation
from laundry_backend.services.errors import (
    AlreadyConfirmed,
    Conflict,
    ErrorKind,
    Forbidden,
    InvalidInput,
    NotFound,
)
from laundry_backend.services.reconciliation import InvoiceSelector, MatchSettings


def _sends(*rows):
    df = pd.DataFrame(list(rows))
    for col in ("date", "sent_at"):
        df[col] = pd.to_datetime(df[col])
    df["confirmed_at"] = pd.NaT
    return df


def _invoice(amount=120.0, weight=50.0, protectors=10.0, created="2024-05-10", customer="Hotel Sun"):
    return Invoice(
        id="inv-1",
        customer_name=customer,
        amount=amount,
        total_weight_kg=weight,
        protectors_amount=protectors,
        created_at=datetime.fromisoformat(created),
    )


# ============================================================================
# Constants
# ============================================================================

class TestConstants:
    def test_date_window(self):
        assert reconciliation.DATE_WINDOW_DAYS == 30

    def test_amount_tolerance(self):
        assert reconciliation.AMOUNT_TOLERANCE == 0.01

    def test_corroborating_tolerance(self):
        assert reconciliation.CORROBORATING_TOLERANCE == 1.0

    def test_fallback_window(self):
        assert reconciliation.FALLBACK_WINDOW_DAYS == 7

    def test_settings_default_to_constants(self):
        settings = MatchSettings()
        assert settings.date_window_days == 30
        assert settings.amount_tolerance == 0.01
        assert settings.corroborating_tolerance == 1.0
        assert settings.fallback_window_days == 7


# ============================================================================
# Pure matchers
# ============================================================================

class TestMatchInvoiceRows:
    def test_reference_invoice_matches_send(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.00, 50.3, 10.4))
        matched = reconciliation.match_invoice_rows(_invoice(), sends)
        assert list(matched["id"]) == ["es-1"]

    def test_half_lari_difference_never_matches(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.50, 50.3, 10.4))
        assert reconciliation.match_invoice_rows(_invoice(), sends).empty
        assert reconciliation.match_fallback_rows(_invoice(), sends).empty

    def test_outside_date_window(self):
        sends = _sends(send_row("es-1", "2024-03-01", 120.00, 50.0, 10.0))
        assert reconciliation.match_invoice_rows(_invoice(), sends).empty

    def test_weight_beyond_corroborating_tolerance_rejects(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.00, 52.0, 10.0))
        assert reconciliation.match_invoice_rows(_invoice(), sends).empty

    def test_zero_weight_on_send_does_not_reject(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.00, 0.0, 0.0))
        assert len(reconciliation.match_invoice_rows(_invoice(), sends)) == 1

    def test_zero_weight_on_invoice_skips_check(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.00, 80.0, 30.0))
        invoice = _invoice(weight=0.0, protectors=0.0)
        assert len(reconciliation.match_invoice_rows(invoice, sends)) == 1

    def test_custom_tolerance_is_injectable(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.50, 50.0, 10.0))
        wide = MatchSettings(amount_tolerance=1.0)
        assert len(reconciliation.match_invoice_rows(_invoice(), sends, wide)) == 1

    def test_one_tetri_difference_matches(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.01, 50.3, 10.4))
        assert list(reconciliation.match_invoice_rows(_invoice(), sends)["id"]) == ["es-1"]

    def test_two_tetri_difference_never_matches(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.02, 50.3, 10.4))
        assert reconciliation.match_invoice_rows(_invoice(), sends).empty

    @pytest.mark.parametrize("invoiced, sent", [(10.0, 10.01), (0.3, 0.31), (1234.56, 1234.55)])
    def test_tetri_boundary_is_inclusive(self, invoiced, sent):
        sends = _sends(send_row("es-1", "2024-05-09", sent))
        invoice = _invoice(amount=invoiced, weight=0.0, protectors=0.0)
        assert len(reconciliation.match_invoice_rows(invoice, sends)) == 1

    def test_empty_sends(self):
        empty = _sends(send_row("x", "2024-05-09", 1.0)).iloc[0:0]
        assert reconciliation.match_invoice_rows(_invoice(), empty).empty


class TestMatchFallbackRows:
    def test_amount_only_within_seven_days(self):
        sends = _sends(
            send_row("near", "2024-05-14", 120.00, 90.0, 40.0),
            send_row("far", "2024-05-25", 120.00),
        )
        matched = reconciliation.match_fallback_rows(_invoice(), sends)
        assert list(matched["id"]) == ["near"]


class TestMatchDescriptorRows:
    def _selector(self, **overrides):
        values = dict(date="2024-05-09", month="2024-05", amount=120.0, weight_kg=50.3, protectors_amount=10.4)
        values.update(overrides)
        return InvoiceSelector(**values)

    def test_exact_day_and_figures(self):
        sends = _sends(
            send_row("hit", "2024-05-09", 120.00, 50.3, 10.4),
            send_row("other-day", "2024-05-10", 120.00, 50.3, 10.4),
        )
        matched = reconciliation.match_descriptor_rows(self._selector(), sends)
        assert list(matched["id"]) == ["hit"]

    def test_weight_must_match_within_a_tetri(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.00, 50.5, 10.4))
        assert reconciliation.match_descriptor_rows(self._selector(), sends).empty

    def test_day_outside_month_never_matches(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.00, 50.3, 10.4))
        assert reconciliation.match_descriptor_rows(self._selector(month="2024-06"), sends).empty

    def test_bad_date(self):
        sends = _sends(send_row("es-1", "2024-05-09", 120.00, 50.3, 10.4))
        with pytest.raises(InvalidInput) as exc:
            reconciliation.match_descriptor_rows(self._selector(date="not a date"), sends)
        assert exc.value.code == "bad_date"


# ============================================================================
# Stored matching through core
# ============================================================================

@pytest.fixture
def reference_data(hotels, seed):
    seed(
        "email_sends",
        send_row("es-1", "2024-05-09", 120.00, 50.3, 10.4),
        send_row("es-moon", "2024-05-09", 120.00, 50.3, 10.4, hotel="Hotel Moon"),
    )
    seed(
        "invoices",
        {"id": "inv-1", "customer_name": "  hotel   SUN ", "amount": 120.0,
         "total_weight_kg": 50.0, "protectors_amount": 10.0, "created_at": "2024-05-10"},
        {"id": "inv-odd", "customer_name": "Hotel Sun", "amount": 120.5,
         "total_weight_kg": 50.0, "protectors_amount": 10.0, "created_at": "2024-05-10"},
        {"id": "inv-moon", "customer_name": "Hotel Moon", "amount": 120.0,
         "created_at": "2024-05-10"},
    )


class TestMatchInvoice:
    def test_invoice_strategy_confirms(self, reference_data, con, sun_tenant):
        result = core.match_invoice(InvoiceSelector(invoice_id="inv-1"), sun_tenant)
        assert result.strategy == "invoice"
        assert result.confirmed_count == 1
        assert result.email_send_ids == ["es-1"]

        send = data_layer.fetch_email_send(con, "es-1")
        assert send.confirmed_by == "user-sun"
        assert send.is_confirmed

    def test_other_hotel_send_untouched(self, reference_data, con, sun_tenant):
        core.match_invoice(InvoiceSelector(invoice_id="inv-1"), sun_tenant)
        assert not data_layer.fetch_email_send(con, "es-moon").is_confirmed

    def test_second_confirmation_is_already_confirmed(self, reference_data, con, sun_tenant):
        core.match_invoice(InvoiceSelector(invoice_id="inv-1"), sun_tenant)
        before = con.execute("SELECT confirmed_at FROM email_sends WHERE id='es-1'").fetchone()[0]

        with pytest.raises(AlreadyConfirmed) as exc:
            core.match_invoice(InvoiceSelector(invoice_id="inv-1"), sun_tenant)
        assert exc.value.kind is ErrorKind.ALREADY_CONFIRMED
        assert not isinstance(exc.value, Conflict)

        after = con.execute("SELECT confirmed_at FROM email_sends WHERE id='es-1'").fetchone()[0]
        assert after == before

    def test_unknown_invoice(self, reference_data, sun_tenant):
        with pytest.raises(NotFound) as exc:
            core.match_invoice(InvoiceSelector(invoice_id="missing"), sun_tenant)
        assert exc.value.code == "invoice_not_found"

    def test_invoice_without_matching_sends(self, reference_data, sun_tenant):
        with pytest.raises(NotFound) as exc:
            core.match_invoice(InvoiceSelector(invoice_id="inv-odd"), sun_tenant)
        assert exc.value.code == "no_matching_sends"

    def test_invoice_of_other_hotel_is_forbidden(self, reference_data, sun_tenant):
        with pytest.raises(Forbidden):
            core.match_invoice(InvoiceSelector(invoice_id="inv-moon"), sun_tenant)

    def test_explicit_ids(self, reference_data, sun_tenant):
        result = core.match_invoice(InvoiceSelector(email_send_ids=["es-1"]), sun_tenant)
        assert result.strategy == "explicit_ids"
        assert result.confirmed_count == 1

    def test_explicit_ids_of_other_hotel_are_ignored(self, reference_data, con, sun_tenant):
        with pytest.raises(NotFound):
            core.match_invoice(InvoiceSelector(email_send_ids=["es-moon"]), sun_tenant)
        assert not data_layer.fetch_email_send(con, "es-moon").is_confirmed

    def test_descriptor(self, reference_data, sun_tenant):
        selector = InvoiceSelector(
            date="2024-05-09", month="2024-05", amount=120.0, weight_kg=50.3, protectors_amount=10.4
        )
        result = core.match_invoice(selector, sun_tenant)
        assert result.strategy == "descriptor"
        assert result.email_send_ids == ["es-1"]

    def test_incomplete_selector(self, reference_data, sun_tenant):
        with pytest.raises(InvalidInput) as exc:
            core.match_invoice(InvoiceSelector(date="2024-05-09", amount=120.0), sun_tenant)
        assert exc.value.code == "selector_incomplete"

    def test_actor_without_hotel(self, reference_data, admin):
        with pytest.raises(Forbidden):
            core.match_invoice(InvoiceSelector(invoice_id="inv-1"), admin)

    def test_fallback_used_when_corroboration_fails(self, hotels, seed, sun_tenant):
        seed("email_sends", send_row("es-heavy", "2024-05-12", 80.00, 70.0, 0.0))
        seed("invoices", {"id": "inv-2", "customer_name": "Hotel Sun", "amount": 80.0,
                          "total_weight_kg": 40.0, "created_at": "2024-05-10"})
        result = core.match_invoice(InvoiceSelector(invoice_id="inv-2"), sun_tenant)
        assert result.strategy == "fallback"
        assert result.email_send_ids == ["es-heavy"]


class TestConfirmCandidates:
    def test_lost_race_is_conflict(self, reference_data, con):
        strategy, candidates = reconciliation.find_candidates(
            con, InvoiceSelector(invoice_id="inv-1"), "Hotel Sun"
        )
        # another request confirms between the read and the write
        con.execute("UPDATE email_sends SET confirmed_at = '2024-05-11T00:00:00' WHERE id = 'es-1'")
        con.commit()
        with pytest.raises(Conflict):
            reconciliation.confirm_candidates(
                con, strategy, candidates, "user-sun", data_layer.now_utc()
            )

    def test_partial_race_reports_only_own_confirmations(self, hotels, seed, con):
        seed(
            "email_sends",
            send_row("a", "2024-05-01", 10.0),
            send_row("b", "2024-05-02", 20.0),
        )
        strategy, candidates = reconciliation.find_candidates(
            con, InvoiceSelector(email_send_ids=["a", "b"]), "Hotel Sun"
        )
        con.execute(
            "UPDATE email_sends SET confirmed_by = 'user-other', "
            "confirmed_at = '2024-05-11T00:00:00' WHERE id = 'a'"
        )
        con.commit()
        result = reconciliation.confirm_candidates(
            con, strategy, candidates, "user-sun", datetime(2024, 5, 12, 9, 30)
        )
        assert result.confirmed_count == 1
        assert result.email_send_ids == ["b"]
        assert data_layer.fetch_email_send(con, "a").confirmed_by == "user-other"


class TestConfirmMonth:
    def test_confirms_every_send_of_the_month(self, hotels, seed, sun_tenant):
        seed(
            "email_sends",
            send_row("a", "2024-05-01", 10.0),
            send_row("b", "2024-05-31", 20.0),
            send_row("c", "2024-06-01", 30.0),
        )
        result = core.confirm_month("2024-05", sun_tenant)
        assert result.strategy == "month"
        assert sorted(result.email_send_ids) == ["a", "b"]

        with pytest.raises(AlreadyConfirmed):
            core.confirm_month("2024-05", sun_tenant)

    def test_empty_month(self, hotels, sun_tenant):
        with pytest.raises(NotFound) as exc:
            core.confirm_month("2024-05", sun_tenant)
        assert exc.value.code == "no_sends_for_month"

    def test_bad_month(self, hotels, sun_tenant):
        with pytest.raises(InvalidInput) as exc:
            core.confirm_month("2024-13", sun_tenant)
        assert exc.value.code == "bad_month"


class TestAnnotateInvoices:
    def test_lists_matched_sends(self, reference_data, sun_tenant):
        rows = core.list_hotel_invoices("hotel-sun", actor=sun_tenant)
        by_id = {r["invoice_id"]: r for r in rows}
        assert set(by_id) == {"inv-1", "inv-odd"}
        assert by_id["inv-1"]["email_send_ids"] == ["es-1"]
        assert by_id["inv-odd"]["email_send_ids"] == []
        assert by_id["inv-odd"]["remaining_amount"] == 120.5
