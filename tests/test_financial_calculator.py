"""Tests for the patient financial calculator."""

from datetime import date

import pytest
from pydantic import ValidationError

from clinic_finance.patient_financials import (
    BillingInfo,
    Discount,
    FinancialCalculator,
    OneTimeCharge,
    Patient,
    PatientStatus,
    Payment,
    RateHistoryEntry,
    Refund,
    StatusHistoryEntry,
    calculate_base_charge,
    calculate_patient_financials,
    resolve_rate,
    resolve_status,
)
from clinic_finance.patient_financials.calculator import round_money
from clinic_finance.patient_financials.discounts import apply_discounts


def _rate(start: date, rate: float) -> RateHistoryEntry:
    return RateHistoryEntry(start_date=start, rate=rate)


def _discount(
    discount_id: str,
    kind: str,
    value: float,
    valid_from: date = date(2024, 3, 1),
    valid_until: date = date(2024, 3, 31),
    status: str = "approved",
) -> Discount:
    return Discount(
        id=discount_id,
        request_date=date(2024, 2, 20),
        reason="hardship",
        kind=kind,
        value=value,
        valid_from=valid_from,
        valid_until=valid_until,
        status=status,
    )


def _march_patient(patient_id: str = "P1", rate: float = 3100, **overrides) -> Patient:
    """Patient treated for exactly March 2024 (31 days)."""
    fields = {
        "id": patient_id,
        "start_date": date(2024, 3, 1),
        "end_date": date(2024, 3, 31),
        "status": PatientStatus.TREATMENT_ENDED,
        "rate_history": [_rate(date(2024, 3, 1), rate)],
    }
    fields.update(overrides)
    return Patient(**fields)


class TestPatientModels:
    """Tests for model construction and validation."""

    def test_status_accepts_english_alias(self):
        patient = Patient(id="P1", status="frozen")
        assert patient.status == PatientStatus.FROZEN

    def test_status_accepts_stored_label(self):
        patient = Patient(id="P1", status="סיום טיפול")
        assert patient.status == PatientStatus.TREATMENT_ENDED

    def test_blank_dates_become_none(self):
        patient = Patient(id="P1", start_date="", end_date="")
        assert patient.start_date is None
        assert patient.end_date is None

    def test_negative_rate_rejected(self):
        with pytest.raises(ValidationError):
            RateHistoryEntry(start_date=date(2024, 1, 1), rate=-10)

    def test_infinite_rate_rejected(self):
        with pytest.raises(ValidationError):
            RateHistoryEntry(start_date=date(2024, 1, 1), rate=float("inf"))

    def test_infinite_amounts_rejected(self):
        with pytest.raises(ValidationError):
            Payment(id="T1", date=date(2024, 3, 1), amount=float("inf"))
        with pytest.raises(ValidationError):
            Refund(id="T2", date=date(2024, 3, 1), amount=float("inf"))
        with pytest.raises(ValidationError):
            _discount("D1", "fixed_amount", float("inf"))

    def test_nan_amount_rejected(self):
        with pytest.raises(ValidationError):
            Payment(id="T1", date=date(2024, 3, 1), amount=float("nan"))

    def test_inverted_discount_window_rejected(self):
        with pytest.raises(ValidationError):
            _discount("D1", "fixed_amount", 100, valid_from=date(2024, 5, 1), valid_until=date(2024, 4, 1))

    def test_percentage_over_100_rejected(self):
        with pytest.raises(ValidationError):
            _discount("D1", "percentage", 120)

    def test_split_percentage_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            BillingInfo(split_with_patient_id="P2", split_percentage=150)

    def test_transactions_discriminated_by_type(self):
        patient = Patient(
            id="P1",
            transactions=[
                {"id": "T1", "date": "2024-03-05", "amount": 100, "type": "payment"},
                {"id": "T2", "date": "2024-03-06", "amount": 20, "type": "refund"},
                {"id": "T3", "date": "2024-03-07", "amount": 50, "type": "charge"},
            ],
        )
        assert [type(t) for t in patient.transactions] == [Payment, Refund, OneTimeCharge]


class TestTemporalResolvers:
    """Tests for rate and status lookups."""

    def test_empty_history_returns_none(self):
        assert resolve_rate([], date(2024, 1, 1)) is None
        assert resolve_status([], date(2024, 1, 1)) is None

    def test_before_earliest_entry_returns_none(self):
        history = [_rate(date(2024, 2, 1), 500), _rate(date(2024, 4, 1), 600)]
        assert resolve_rate(history, date(2024, 1, 31)) is None

    def test_latest_entry_not_after_date_wins(self):
        # Stored out of date order on purpose
        history = [_rate(date(2024, 4, 1), 600), _rate(date(2024, 2, 1), 500)]
        assert resolve_rate(history, date(2024, 3, 15)).rate == 500
        assert resolve_rate(history, date(2024, 4, 1)).rate == 600
        assert resolve_rate(history, date(2025, 1, 1)).rate == 600

    def test_same_start_date_resolves_to_first_inserted(self):
        history = [_rate(date(2024, 2, 1), 500), _rate(date(2024, 2, 1), 700)]
        assert resolve_rate(history, date(2024, 2, 10)).rate == 500

    def test_status_resolution_keyed_on_date(self):
        history = [
            StatusHistoryEntry(date=date(2024, 1, 1), status="in_treatment", changed_by="admin"),
            StatusHistoryEntry(date=date(2024, 2, 1), status="frozen", changed_by="admin"),
        ]
        assert resolve_status(history, date(2024, 1, 31)).status == PatientStatus.IN_TREATMENT
        assert resolve_status(history, date(2024, 2, 1)).status == PatientStatus.FROZEN


class TestBaseCharge:
    """Tests for the pro-rata base charge."""

    def test_empty_rate_history_is_zero(self):
        patient = _march_patient(rate_history=[])
        assert calculate_base_charge(patient) == 0

    def test_missing_start_date_is_zero(self):
        patient = _march_patient(start_date=None)
        assert calculate_base_charge(patient) == 0

    def test_start_after_end_is_zero(self):
        patient = _march_patient(start_date=date(2024, 4, 10), end_date=date(2024, 3, 31))
        assert calculate_base_charge(patient) == 0

    def test_full_month_charges_full_rate(self):
        assert calculate_base_charge(_march_patient(rate=3100)) == pytest.approx(3100)

    def test_partial_first_month_is_prorated(self):
        """Jan 15-31 is 17 of 31 days."""
        patient = Patient(
            id="P1",
            start_date=date(2024, 1, 15),
            end_date="",
            status="in_treatment",
            rate_history=[_rate(date(2024, 1, 15), 600)],
        )
        base = calculate_base_charge(patient, as_of=date(2024, 1, 31))
        assert base == pytest.approx(600 / 31 * 17)

        summary = calculate_patient_financials(patient, [patient], as_of=date(2024, 1, 31))
        assert summary.total_charged == 329.03

    def test_end_date_ignored_while_still_in_treatment(self):
        patient = _march_patient(
            end_date=date(2024, 3, 10),
            status=PatientStatus.IN_TREATMENT,
        )
        base = calculate_base_charge(patient, as_of=date(2024, 3, 31))
        assert base == pytest.approx(3100)

    def test_end_date_closes_window_for_ending_status(self):
        patient = _march_patient(end_date=date(2024, 3, 10), status=PatientStatus.DISCONTINUED)
        base = calculate_base_charge(patient, as_of=date(2024, 12, 31))
        assert base == pytest.approx(1000)

    def test_rate_change_applies_within_same_month(self):
        """Days 1-15 at 100/day and days 16-31 at 200/day."""
        patient = _march_patient(
            rate_history=[_rate(date(2024, 3, 16), 6200), _rate(date(2024, 3, 1), 3100)],
        )
        assert calculate_base_charge(patient) == pytest.approx(1500 + 3200)

    def test_frozen_month_contributes_nothing(self):
        patient = Patient(
            id="P1",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 3, 31),
            status=PatientStatus.TREATMENT_ENDED,
            rate_history=[_rate(date(2024, 1, 1), 3100)],
            status_history=[
                StatusHistoryEntry(date=date(2024, 1, 1), status="in_treatment"),
                StatusHistoryEntry(date=date(2024, 2, 1), status="frozen"),
                StatusHistoryEntry(date=date(2024, 3, 1), status="in_treatment"),
            ],
        )
        months = FinancialCalculator().monthly_breakdown(patient)

        assert [m.month for m in months] == [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]
        assert months[1].net == 0
        assert months[1].days_frozen == 29
        assert months[1].days_charged == 0
        assert calculate_base_charge(patient) == pytest.approx(6200)

    def test_zero_rate_days_accrue_nothing(self):
        patient = _march_patient(
            rate_history=[_rate(date(2024, 3, 1), 3100), _rate(date(2024, 3, 11), 0)],
        )
        months = FinancialCalculator().monthly_breakdown(patient)
        assert months[0].days_charged == 10
        assert months[0].net == pytest.approx(1000)

    def test_breakdown_spans_year_boundary(self):
        patient = Patient(
            id="P1",
            start_date=date(2023, 12, 20),
            end_date=date(2024, 1, 5),
            status=PatientStatus.SUCCESSFULLY_ENDED,
            rate_history=[_rate(date(2023, 12, 1), 3100)],
        )
        months = FinancialCalculator().monthly_breakdown(patient)
        assert [m.month for m in months] == [date(2023, 12, 1), date(2024, 1, 1)]
        assert [m.days_charged for m in months] == [12, 5]
        assert sum(m.net for m in months) == pytest.approx(1700)


class TestDiscounts:
    """Tests for ordered discount application."""

    def test_fixed_then_percentage(self):
        net, steps = apply_discounts(
            1000.0, [_discount("D1", "fixed_amount", 200), _discount("D2", "percentage", 10)]
        )
        assert net == pytest.approx(720)
        assert [s.discount_id for s in steps] == ["D1", "D2"]
        assert steps[0].charge_after == pytest.approx(800)

    def test_percentage_then_fixed(self):
        net, _ = apply_discounts(
            1000.0, [_discount("D2", "percentage", 10), _discount("D1", "fixed_amount", 200)]
        )
        assert net == pytest.approx(700)

    def test_stored_order_drives_month_charge(self):
        """A 31-day month at 1000 with fixed 200 then 10% yields 720."""
        patient = _march_patient(
            rate=1000,
            discounts=[_discount("D1", "fixed_amount", 200), _discount("D2", "percentage", 10)],
        )
        summary = calculate_patient_financials(patient, [patient])
        assert summary.total_charged == 720.0

        reordered = patient.model_copy(update={"discounts": list(reversed(patient.discounts))})
        assert calculate_patient_financials(reordered, [reordered]).total_charged == 700.0

    def test_fixed_discount_floors_at_zero(self):
        patient = _march_patient(discounts=[_discount("D1", "fixed_amount", 5000)])
        assert calculate_base_charge(patient) == 0

    def test_only_approved_discounts_apply(self):
        patient = _march_patient(
            discounts=[
                _discount("D1", "percentage", 50, status="pending"),
                _discount("D2", "percentage", 50, status="rejected"),
            ]
        )
        assert calculate_base_charge(patient) == pytest.approx(3100)

    def test_discount_window_matches_whole_months(self):
        """A window touching March on its last day still discounts all of March."""
        patient = _march_patient(
            discounts=[
                _discount(
                    "D1",
                    "percentage",
                    50,
                    valid_from=date(2024, 1, 10),
                    valid_until=date(2024, 3, 31),
                ),
                _discount(
                    "D2",
                    "fixed_amount",
                    100,
                    valid_from=date(2024, 4, 1),
                    valid_until=date(2024, 6, 30),
                ),
            ]
        )
        months = FinancialCalculator().monthly_breakdown(patient)
        assert [a.discount_id for a in months[0].discounts_applied] == ["D1"]
        assert months[0].net == pytest.approx(1550)


class TestSplitBilling:
    """Tests for split billing between patients."""

    def test_payer_and_partner_shares(self):
        payer = _march_patient(
            "A",
            rate=1000,
            billing_info=BillingInfo(split_with_patient_id="B", split_percentage=60),
        )
        partner = Patient(id="B")
        roster = [payer, partner]

        assert calculate_patient_financials(payer, roster).total_charged == 600.0
        assert calculate_patient_financials(partner, roster).total_charged == 400.0

    def test_one_time_charges_are_not_split(self):
        payer = _march_patient(
            "A",
            rate=1000,
            billing_info=BillingInfo(split_with_patient_id="B", split_percentage=60),
            transactions=[OneTimeCharge(id="C1", date=date(2024, 3, 5), amount=50, description="report")],
        )
        partner = Patient(id="B")
        roster = [payer, partner]

        assert calculate_patient_financials(payer, roster).total_charged == 650.0
        assert calculate_patient_financials(partner, roster).total_charged == 400.0

    def test_partner_pays_own_charge_plus_share(self):
        payer = _march_patient(
            "A",
            rate=3100,
            billing_info=BillingInfo(split_with_patient_id="B", split_percentage=50),
        )
        partner = _march_patient("B", rate=620)
        roster = [payer, partner]

        assert calculate_patient_financials(partner, roster).total_charged == 620.0 + 1550.0

    def test_percentage_without_partner_is_ignored(self):
        patient = _march_patient(billing_info=BillingInfo(split_percentage=40))
        assert calculate_patient_financials(patient, [patient]).total_charged == 3100.0

    def test_only_first_incoming_split_is_billed(self):
        target = Patient(id="T")
        first = _march_patient(
            "C", rate=1000, billing_info=BillingInfo(split_with_patient_id="T", split_percentage=50)
        )
        second = _march_patient(
            "D", rate=3100, billing_info=BillingInfo(split_with_patient_id="T", split_percentage=0)
        )
        roster = [target, first, second]

        summary = calculate_patient_financials(target, roster)
        assert summary.total_charged == 500.0
        assert [a.kind for a in summary.split_anomalies] == ["multiple_incoming"]
        assert summary.split_anomalies[0].patient_ids == ["T", "C", "D"]

    def test_cycle_is_flagged_not_corrected(self):
        a = _march_patient(
            "A", rate=1000, billing_info=BillingInfo(split_with_patient_id="B", split_percentage=60)
        )
        b = _march_patient(
            "B", rate=3100, billing_info=BillingInfo(split_with_patient_id="A", split_percentage=50)
        )
        roster = [a, b]

        summary_a = calculate_patient_financials(a, roster)
        # A keeps 60% of its own and absorbs 50% of B's
        assert summary_a.total_charged == 600.0 + 1550.0
        assert [x.kind for x in summary_a.split_anomalies] == ["cycle"]
        assert summary_a.split_anomalies[0].patient_ids == ["A", "B"]

    def test_self_reference_is_flagged(self):
        patient = _march_patient(
            "A", rate=1000, billing_info=BillingInfo(split_with_patient_id="A", split_percentage=60)
        )
        summary = calculate_patient_financials(patient, [patient])
        # Own 60% plus the complementary 40% from itself
        assert summary.total_charged == 1000.0
        assert [x.kind for x in summary.split_anomalies] == ["self_reference"]

    def test_dangling_partner_is_flagged(self):
        patient = _march_patient(
            "A", rate=1000, billing_info=BillingInfo(split_with_patient_id="GONE", split_percentage=60)
        )
        summary = calculate_patient_financials(patient, [patient])
        assert summary.total_charged == 600.0
        assert [x.kind for x in summary.split_anomalies] == ["dangling_reference"]


class TestFinancialSummary:
    """Tests for totals and balance."""

    @pytest.fixture
    def calculator(self):
        return FinancialCalculator(as_of=date(2024, 6, 30))

    @pytest.fixture
    def patient(self):
        return _march_patient(
            transactions=[
                Payment(id="T1", date=date(2024, 3, 10), amount=2000, method="cash", collector="Dana"),
                Refund(id="T2", date=date(2024, 3, 20), amount=150, reason="overpaid"),
                OneTimeCharge(id="T3", date=date(2024, 3, 21), amount=80, description="report"),
            ]
        )

    def test_totals_and_balance(self, calculator, patient):
        summary = calculator.summarize(patient, [patient])
        assert summary.total_charged == 3180.0
        assert summary.total_paid == 1850.0
        assert summary.balance == -1330.0

    def test_balance_positive_when_paid_in_excess(self, calculator):
        patient = _march_patient(
            transactions=[Payment(id="T1", date=date(2024, 3, 1), amount=3500)],
        )
        summary = calculator.summarize(patient, [patient])
        assert summary.balance == 400.0

    def test_idempotent(self, calculator, patient):
        first = calculator.summarize(patient, [patient])
        second = calculator.summarize(patient, [patient])
        assert first == second

    def test_payment_raises_paid_and_balance_by_amount(self, calculator, patient):
        before = calculator.summarize(patient, [patient])
        paid_more = patient.model_copy(
            update={
                "transactions": [
                    *patient.transactions,
                    Payment(id="T9", date=date(2024, 4, 1), amount=125.5),
                ]
            }
        )
        after = calculator.summarize(paid_more, [paid_more])

        assert after.total_paid == pytest.approx(before.total_paid + 125.5)
        assert after.balance == pytest.approx(before.balance + 125.5)
        assert after.total_charged == before.total_charged

    def test_refund_lowers_paid_by_amount(self, calculator, patient):
        before = calculator.summarize(patient, [patient])
        refunded = patient.model_copy(
            update={
                "transactions": [
                    *patient.transactions,
                    Refund(id="T9", date=date(2024, 4, 1), amount=40),
                ]
            }
        )
        after = calculator.summarize(refunded, [refunded])
        assert after.total_paid == pytest.approx(before.total_paid - 40)

    def test_inputs_not_mutated(self, calculator, patient):
        snapshot = patient.model_dump()
        calculator.summarize(patient, [patient])
        assert patient.model_dump() == snapshot

    def test_batch_keeps_input_order(self, calculator):
        patients = [_march_patient(f"P{i}") for i in range(3)]
        results = calculator.summarize_batch(patients)
        assert [r.patient_id for r in results] == ["P0", "P1", "P2"]

    def test_round_money_is_half_up(self):
        assert round_money(2.675) == 2.68
        assert round_money(0.125) == 0.13
        assert round_money(-0.125) == -0.13
        assert round_money(329.0322580645161) == 329.03
