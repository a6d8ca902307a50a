from decimal import Decimal

import pytest

from boxoffice.errors import ValidationError
from boxoffice.pricing import (
    FeeModel, Line, TaxRule, allocate, calculate_pricing, discount_amount,
    proportional_clawback, round_half_up, ticket_refund_ceiling,
)


def test_round_half_up_rounds_halves_away_from_zero():
    assert round_half_up(Decimal("0.5")) == 1
    assert round_half_up(Decimal("2.5")) == 3
    assert round_half_up(Decimal("2.49")) == 2


def test_allocate_sums_exactly_and_favours_largest_remainder():
    assert allocate(100, [1, 1, 1]) == [34, 33, 33]
    assert allocate(1700, [5000, 12000]) == [500, 1200]
    shares = allocate(1001, [3, 7, 11])
    assert sum(shares) == 1001


def test_allocate_without_weights_splits_evenly():
    assert allocate(10, [0, 0]) == [5, 5]
    assert allocate(10, []) == []


def test_bc_order_collects_gst_and_pst():
    p = calculate_pricing([Line("ga", 5000, 2)], FeeModel(),
                          TaxRule(province="bc"))
    assert p.subtotal_cents == 10000
    assert p.gst_cents == 500
    assert p.pst_cents == 700
    assert p.tax_cents == 1200
    assert p.total_cents == 11200
    # 2.5% + 50 per ticket, withheld from the organizer
    assert p.fees_cents == 350
    assert p.net_to_organizer_cents == 9650


def test_outside_bc_only_gst():
    p = calculate_pricing([Line("ga", 5000, 2)], FeeModel(),
                          TaxRule(province="ON"))
    assert p.pst_cents == 0
    assert p.total_cents == 10500


def test_no_tax_when_event_does_not_collect():
    p = calculate_pricing([Line("ga", 5000, 1)], FeeModel(),
                          TaxRule(collect_tax=False, province="BC"))
    assert p.tax_cents == 0
    assert p.total_cents == 5000


def test_discount_is_spread_over_items():
    p = calculate_pricing(
        [Line("ga", 5000, 1), Line("vip", 12000, 1)],
        FeeModel(), TaxRule(province="BC"), discount_cents=1700,
    )
    assert p.subtotal_cents == 15300
    assert [i.discount_cents for i in p.items] == [500, 1200]
    assert sum(i.tax_cents for i in p.items) == p.tax_cents
    assert sum(i.fee_cents for i in p.items) == p.fees_cents
    assert sum(i.line_total_cents for i in p.items) == p.total_cents


def test_discount_amounts_are_clamped():
    assert discount_amount("fixed", 20000, 10000) == 10000
    assert discount_amount("percent", 15, 999) == 150
    assert discount_amount("percent", 100, 999) == 999
    with pytest.raises(ValidationError):
        discount_amount("bogus", 1, 100)


def test_discount_larger_than_subtotal_makes_it_zero():
    p = calculate_pricing([Line("ga", 1000, 1)], FeeModel(0, 0),
                          TaxRule(province="BC"), discount_cents=5000)
    assert p.discount_cents == 1000
    assert p.total_cents == 0


def test_bad_lines_are_rejected():
    with pytest.raises(ValidationError):
        calculate_pricing([], FeeModel(), TaxRule())
    with pytest.raises(ValidationError):
        calculate_pricing([Line("ga", 5000, 0)], FeeModel(), TaxRule())
    with pytest.raises(ValidationError):
        calculate_pricing([Line("ga", -1, 1)], FeeModel(), TaxRule())


def test_ticket_refund_ceiling_is_per_ticket_share_of_the_line():
    assert ticket_refund_ceiling(5000, 2, 0, 1200) == 5600
    assert ticket_refund_ceiling(5000, 3, 1000, 0) == 4667


def test_proportional_clawback_never_exceeds_the_sale():
    assert proportional_clawback(9650, 5600, 11200) == 4825
    assert proportional_clawback(9650, 11200, 11200) == 9650
    assert proportional_clawback(9650, 50000, 11200) == 9650
    assert proportional_clawback(9650, 0, 11200) == 0
    assert proportional_clawback(0, 100, 11200) == 0


def test_platform_fee_is_capped_at_the_subtotal():
    # 99% off two 50.00 tickets: 2.5% of 100 + 2 x 50 would be 103
    p = calculate_pricing([Line("ga", 5000, 2)], FeeModel(),
                          TaxRule(province="BC"), discount_cents=9900)
    assert p.subtotal_cents == 100
    assert p.fees_cents == 100
    assert p.net_to_organizer_cents == 0
    assert sum(i.fee_cents for i in p.items) == 100
    assert p.total_cents == 112

    cheap = calculate_pricing([Line("sticker", 25, 4)], FeeModel(),
                              TaxRule(collect_tax=False))
    assert cheap.fees_cents == cheap.subtotal_cents == 100
