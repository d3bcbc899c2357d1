"""Tests for pledge evaluation and pledge form validation."""

from decimal import Decimal

import pytest

from fundraisers.errors import FundraiserServiceError, MalformedPledgeError
from fundraisers.pledges import (
    MissingProgressPolicy,
    amount_owed,
    describe_terms,
    estimated_amount,
    levels_for_pledge,
    to_decimal,
    validate_pledge_terms,
)
from fundraisers.records import Pledge


def _per_level(rate="5", cap="20", player_id=None, **extra):
    return Pledge(
        id="p-rate",
        fundraiser_id="f-1",
        pledge_type="per_level",
        amount_per_level=Decimal(rate) if rate is not None else None,
        max_amount=Decimal(cap) if cap is not None else None,
        player_id=player_id,
        **extra,
    )


def _flat(amount="50"):
    return Pledge(id="p-flat", fundraiser_id="f-1", pledge_type="flat", flat_amount=Decimal(amount))


class TestAmountOwed:
    def test_flat_ignores_levels(self):
        pledge = _flat("50")
        assert {amount_owed(pledge, levels) for levels in (0, 1, 4, 99)} == {Decimal("50.00")}

    def test_per_level_zero_levels_owes_nothing(self):
        assert amount_owed(_per_level(), 0) == Decimal("0.00")

    def test_per_level_is_capped(self):
        pledge = _per_level("5", "20")
        assert amount_owed(pledge, 2) == Decimal("10.00")
        assert amount_owed(pledge, 4) == Decimal("20.00")
        assert amount_owed(pledge, 40) == Decimal("20.00")

    def test_per_level_non_decreasing(self):
        pledge = _per_level("2.50", "17")
        amounts = [amount_owed(pledge, levels) for levels in range(12)]
        assert amounts == sorted(amounts)
        assert max(amounts) <= Decimal("17")

    def test_cents_do_not_drift(self):
        pledge = _per_level("0.10", "100")
        assert amount_owed(pledge, 3) == Decimal("0.30")

    def test_unknown_type_is_malformed(self):
        pledge = Pledge(id="p-bad", fundraiser_id="f-1", pledge_type="monthly")
        with pytest.raises(MalformedPledgeError) as excinfo:
            amount_owed(pledge, 3)
        assert excinfo.value.pledge_id == "p-bad"

    def test_per_level_without_cap_is_malformed(self):
        with pytest.raises(MalformedPledgeError):
            amount_owed(_per_level("5", None), 1)

    def test_flat_without_amount_is_malformed(self):
        pledge = Pledge(id="p-flat", fundraiser_id="f-1", pledge_type="flat")
        with pytest.raises(MalformedPledgeError):
            amount_owed(pledge, 1)

    @pytest.mark.parametrize("levels", [-1, 1.0, "2"])
    def test_bad_level_count_is_a_caller_error(self, levels):
        with pytest.raises(ValueError):
            amount_owed(_flat(), levels)


class TestLevelsForPledge:
    progress = {"alice": 3, "bob": 1}

    def test_untargeted_uses_fundraiser_total(self):
        assert levels_for_pledge(_per_level(), self.progress, 4) == 4

    def test_targeted_uses_player_levels(self):
        assert levels_for_pledge(_per_level(player_id="bob"), self.progress, 4) == 1

    def test_missing_player_defaults_to_zero(self):
        assert levels_for_pledge(_per_level(player_id="carl"), self.progress, 4) == 0

    def test_missing_player_can_fall_back_to_total(self):
        pledge = _per_level(player_id="carl")
        assert levels_for_pledge(pledge, self.progress, 4, MissingProgressPolicy.FUNDRAISER_TOTAL) == 4


def test_policy_parse():
    assert MissingProgressPolicy.parse("fundraiser_total") is MissingProgressPolicy.FUNDRAISER_TOTAL
    assert MissingProgressPolicy.parse(" ZERO ") is MissingProgressPolicy.ZERO
    assert MissingProgressPolicy.parse(None) is MissingProgressPolicy.ZERO
    assert MissingProgressPolicy.parse("whatever") is MissingProgressPolicy.ZERO


class TestValidatePledgeTerms:
    def test_per_level_terms_are_quantized(self):
        terms = validate_pledge_terms({"pledge_type": "per_level", "amount_per_level": 2.5, "max_amount": "20"})
        assert terms == {
            "pledge_type": "per_level",
            "amount_per_level": Decimal("2.50"),
            "max_amount": Decimal("20.00"),
            "flat_amount": None,
        }

    def test_flat_terms(self):
        terms = validate_pledge_terms({"pledge_type": "flat", "flat_amount": "25"})
        assert terms["flat_amount"] == Decimal("25.00")
        assert terms["amount_per_level"] is None

    def test_invalid_type(self):
        with pytest.raises(FundraiserServiceError) as excinfo:
            validate_pledge_terms({"pledge_type": "weekly"})
        assert excinfo.value.status_code == 400

    @pytest.mark.parametrize(
        "payload, message",
        [
            ({"pledge_type": "per_level", "amount_per_level": 0, "max_amount": 10}, "Amount per level"),
            ({"pledge_type": "per_level", "amount_per_level": 5, "max_amount": None}, "Max amount"),
            ({"pledge_type": "per_level", "amount_per_level": 5, "max_amount": 2}, "at least as much"),
            ({"pledge_type": "flat", "flat_amount": -3}, "Flat amount"),
        ],
    )
    def test_rejects_bad_amounts(self, payload, message):
        with pytest.raises(FundraiserServiceError) as excinfo:
            validate_pledge_terms(payload)
        assert message in str(excinfo.value)

    @pytest.mark.parametrize(
        "payload",
        [
            {"pledge_type": "per_level", "amount_per_level": "0.004", "max_amount": "10"},
            {"pledge_type": "per_level", "amount_per_level": "0.003", "max_amount": "0.004"},
            {"pledge_type": "flat", "flat_amount": "0.004"},
        ],
    )
    def test_amounts_that_round_to_zero_are_rejected(self, payload):
        with pytest.raises(FundraiserServiceError) as excinfo:
            validate_pledge_terms(payload)
        assert "must be greater than 0" in str(excinfo.value)

    def test_checks_compare_the_rounded_amounts(self):
        terms = validate_pledge_terms({"pledge_type": "per_level", "amount_per_level": "5.004", "max_amount": "5.001"})
        assert terms["amount_per_level"] == terms["max_amount"] == Decimal("5.00")
        pledge = _per_level(str(terms["amount_per_level"]), str(terms["max_amount"]))
        assert amount_owed(pledge, 3) == Decimal("5.00")

    @pytest.mark.parametrize("raw", ["NaN", "Infinity", "-Infinity", "sNaN", "1e40", "100000000"])
    def test_non_finite_and_oversized_amounts_are_rejected(self, raw):
        with pytest.raises(FundraiserServiceError) as excinfo:
            validate_pledge_terms({"pledge_type": "flat", "flat_amount": raw})
        assert excinfo.value.status_code == 400

    def test_largest_storable_amount_is_accepted(self):
        terms = validate_pledge_terms({"pledge_type": "flat", "flat_amount": "99999999.99"})
        assert terms["flat_amount"] == Decimal("99999999.99")


def test_estimated_amount_uses_default_levels_when_unset():
    assert estimated_amount(_per_level("3", "100"), 0) == Decimal("15.00")
    assert estimated_amount(_per_level("3", "100"), 10) == Decimal("30.00")


def test_describe_terms():
    assert describe_terms(_per_level("5", "20")) == "$5.00/level (max $20.00)"
    assert describe_terms(_flat("50")) == "$50.00 flat"


def test_to_decimal_goes_through_str():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal("") is None
    assert to_decimal("abc") is None


@pytest.mark.parametrize("raw", ["NaN", "inf", "-Infinity", Decimal("NaN"), float("inf")])
def test_to_decimal_drops_non_finite_values(raw):
    assert to_decimal(raw) is None
