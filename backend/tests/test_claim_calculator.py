"""
Tests for claim totals and the net settlement split.
"""
from services.claim_calculator import compute_net, compute_totals, daily_allowance_amount, mileage_amount


class TestComputeTotals:

    def test_category_totals(self):
        claim = {
            "travel_expenses": [{"amount": 9000, "booking_charges": 250}, {"amount": 1200}],
            "accommodation": [{"room_rent": 4000}, {"room_rent": 3500.5}],
            "daily_allowance": [{"amount": 1500}, {"rate": 1000, "days": 2}],
            "local_conveyance": [{"fare": 300}],
            "incidental_expenses": [{"amount": 199.99}],
        }
        totals = compute_totals(claim)
        assert totals["total_travel_expenses"] == 10450
        assert totals["total_accommodation"] == 7500.5
        assert totals["total_daily_allowance"] == 3500
        assert totals["total_local_conveyance"] == 300
        assert totals["total_incidental_expenses"] == 199.99
        assert totals["total_mileage"] == 0
        assert totals["total_amount"] == 21950.49

    def test_empty_claim(self):
        assert compute_totals({})["total_amount"] == 0

    def test_mileage_included(self):
        totals = compute_totals({"mileage_claim": {"distance": 120, "rate_per_km": 10}})
        assert totals["total_mileage"] == 1200
        assert totals["total_amount"] == 1200


class TestLineAmounts:

    def test_daily_allowance_prefers_entered_amount(self):
        assert daily_allowance_amount({"amount": 900, "rate": 1000, "days": 2}) == 900

    def test_daily_allowance_falls_back_to_rate_times_days(self):
        assert daily_allowance_amount({"amount": None, "rate": 1000, "days": 1.5}) == 1500

    def test_mileage_none(self):
        assert mileage_amount(None) == 0


class TestComputeNet:
    """approved - advance split into payable / recoverable."""

    def test_payable(self):
        assert compute_net(8000, 5000) == {"net_payable": 3000, "net_recoverable": 0}

    def test_recoverable(self):
        assert compute_net(3000, 5000) == {"net_payable": 0, "net_recoverable": 2000}

    def test_even(self):
        assert compute_net(5000, 5000) == {"net_payable": 0, "net_recoverable": 0}

    def test_no_advance(self):
        assert compute_net(1234.5, None)["net_payable"] == 1234.5
