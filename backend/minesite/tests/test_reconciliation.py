from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from minesite.services.errors import (
    LockedReconciliationError,
    NotFoundError,
    UnsupportedMetricError,
)
from minesite.services.reconciliation import (
    PRODUCTION_ORE_KEY,
    ReconciliationAllocator,
    month_end,
    month_range,
    spread_daily,
)
from minesite.services.validation import ShiftRef, ShiftSnapshotStore


def _haul(mine, day, tonnes, sub="Production", material="Ore", dn="DS"):
    ShiftSnapshotStore(mine.db).add_activity(
        ShiftRef(site_id=mine.id, date=day, dn=dn, operator="op@mine.example"),
        {
            "activity": "Hauling",
            "sub_activity": sub,
            "values": {"Material": material, "Tonnes Hauled": tonnes, "Equipment": "TR01"},
        },
    )


@pytest.fixture
def mine(db, site):
    return SimpleNamespace(db=db, id=site.id)


def test_month_range_handles_leap_years():
    assert month_range("2024-02").days == 29
    assert month_range("2023-02").days == 28
    assert month_range("2024-12").last == date(2024, 12, 31)
    with pytest.raises(ValueError):
        month_range("2024-13")


@pytest.mark.parametrize("delta", [100.0, -100.0, 1e-5, 12345.678901, 0.0, 7.0])
@pytest.mark.parametrize("month", ["2024-01", "2024-02", "2023-02", "2024-04"])
def test_spread_daily_sums_exactly(delta, month):
    dates = month_range(month).dates()
    allocations = spread_daily(delta, dates)
    assert [day for day, _ in allocations] == dates
    assert sum(value for _, value in allocations) == delta


def test_spread_daily_rounds_all_but_last_day():
    dates = month_range("2024-01").dates()
    allocations = spread_daily(100.0, dates)
    assert all(value == 3.2258 for _, value in allocations[:-1])
    assert allocations[-1][1] == pytest.approx(100.0 - 30 * 3.2258)


def test_month_end_puts_everything_on_last_day():
    dates = month_range("2024-04").dates()
    allocations = month_end(55.5, dates)
    assert allocations[-1] == (date(2024, 4, 30), 55.5)
    assert all(value == 0.0 for _, value in allocations[:-1])


def test_actual_total_honours_basis(mine):
    _haul(mine, date(2024, 1, 3), "1,200 t")
    _haul(mine, date(2024, 1, 4), 300)
    _haul(mine, date(2024, 1, 4), 999, material="Waste", dn="NS")
    _haul(mine, date(2024, 2, 1), 5000)
    ShiftSnapshotStore(mine.db).validate(mine.id, date(2024, 1, 3))

    allocator = ReconciliationAllocator(mine.db)
    assert allocator.actual_total(mine.id, "2024-01", PRODUCTION_ORE_KEY, "validated_only") == 1200
    assert allocator.actual_total(mine.id, "2024-01", PRODUCTION_ORE_KEY, "captured_all") == 1500
    assert allocator.actual_total(mine.id, "2024-01", "hauling|development_ore_tonnes_hauled", "captured_all") == 0


def test_generic_metric_key_reads_shift_totals(mine):
    _haul(mine, date(2024, 1, 3), 100)
    allocator = ReconciliationAllocator(mine.db)
    assert allocator.actual_total(mine.id, "2024-01", "Hauling|Production|Tonnes Hauled", "captured_all") == 100


def test_unsupported_metric(mine):
    with pytest.raises(UnsupportedMetricError):
        ReconciliationAllocator(mine.db).actual_total(mine.id, "2024-01", "tonnes")


def test_upsert_allocates_delta_exactly(mine):
    _haul(mine, date(2024, 1, 10), 400)
    ShiftSnapshotStore(mine.db).validate(mine.id, date(2024, 1, 10))

    record = ReconciliationAllocator(mine.db).upsert(
        mine.id, "2024-01", PRODUCTION_ORE_KEY, reconciled_total=500.0
    )
    assert record.actual_total_snapshot == 400
    assert record.delta_snapshot == 100
    assert len(record.days) == 31
    assert sum(day.allocated_value for day in record.days) == record.delta_snapshot


@pytest.mark.parametrize("total", [100.0, 1234.567, 98765.4321, 0.3, 777.77])
@pytest.mark.parametrize("month", ["2024-01", "2024-02", "2023-02", "2024-04"])
def test_stored_days_sum_to_delta(mine, total, month):
    record = ReconciliationAllocator(mine.db).upsert(mine.id, month, PRODUCTION_ORE_KEY, reconciled_total=total)
    assert [day.date for day in record.days] == month_range(month).dates()
    assert sum(day.allocated_value for day in record.days) == record.delta_snapshot


def test_month_end_and_recalculate_after_new_data(mine):
    allocator = ReconciliationAllocator(mine.db)
    record = allocator.upsert(
        mine.id,
        "2024-02",
        PRODUCTION_ORE_KEY,
        reconciled_total=1000.0,
        basis="captured_all",
        method="month_end",
    )
    assert record.delta_snapshot == 1000
    assert record.days[-1].date == date(2024, 2, 29)
    assert record.days[-1].allocated_value == 1000

    _haul(mine, date(2024, 2, 5), 250)
    record = allocator.recalculate(mine.id, "2024-02", PRODUCTION_ORE_KEY)
    assert record.actual_total_snapshot == 250
    assert record.delta_snapshot == 750
    assert record.days[-1].allocated_value == 750
    assert record.reconciled_total == 1000


def test_lock_blocks_upsert_and_recalculate(mine):
    allocator = ReconciliationAllocator(mine.db)
    allocator.upsert(mine.id, "2024-03", PRODUCTION_ORE_KEY, reconciled_total=310.0, basis="captured_all")
    allocator.lock(mine.id, "2024-03", PRODUCTION_ORE_KEY)
    _haul(mine, date(2024, 3, 2), 10)

    with pytest.raises(LockedReconciliationError, match="reconciliation is locked"):
        allocator.upsert(mine.id, "2024-03", PRODUCTION_ORE_KEY, reconciled_total=1.0)
    with pytest.raises(LockedReconciliationError):
        allocator.recalculate(mine.id, "2024-03", PRODUCTION_ORE_KEY)
    with pytest.raises(LockedReconciliationError):
        allocator.set_custom_allocations(mine.id, "2024-03", PRODUCTION_ORE_KEY, {})

    record = allocator.get(mine.id, "2024-03", PRODUCTION_ORE_KEY)
    assert record.is_locked is True
    assert record.reconciled_total == 310.0
    assert record.delta_snapshot == 310.0
    assert all(day.allocated_value == 10.0 for day in record.days)

    allocator.unlock(mine.id, "2024-03", PRODUCTION_ORE_KEY)
    record = allocator.recalculate(mine.id, "2024-03", PRODUCTION_ORE_KEY)
    assert record.delta_snapshot == 300.0


def test_recalculate_missing_record(mine):
    with pytest.raises(NotFoundError):
        ReconciliationAllocator(mine.db).recalculate(mine.id, "2024-03", PRODUCTION_ORE_KEY)


def test_custom_allocations_last_day_absorbs_remainder(mine):
    allocator = ReconciliationAllocator(mine.db)
    allocator.upsert(mine.id, "2024-04", PRODUCTION_ORE_KEY, reconciled_total=90.0, basis="captured_all")
    record = allocator.set_custom_allocations(
        mine.id,
        "2024-04",
        PRODUCTION_ORE_KEY,
        {date(2024, 4, 1): 50.0, date(2024, 4, 15): 30.0, date(2024, 4, 30): 999.0},
    )
    values = {day.date: day.allocated_value for day in record.days}
    assert record.method == "custom"
    assert values[date(2024, 4, 1)] == 50.0
    assert values[date(2024, 4, 15)] == 30.0
    assert values[date(2024, 4, 30)] == 10.0
    assert sum(values.values()) == record.delta_snapshot

    _haul(mine, date(2024, 4, 2), 20)
    record = allocator.recalculate(mine.id, "2024-04", PRODUCTION_ORE_KEY)
    values = {day.date: day.allocated_value for day in record.days}
    assert values[date(2024, 4, 1)] == 50.0
    assert values[date(2024, 4, 30)] == -10.0


def test_custom_allocations_outside_month(mine):
    allocator = ReconciliationAllocator(mine.db)
    allocator.upsert(mine.id, "2024-04", PRODUCTION_ORE_KEY, reconciled_total=90.0)
    with pytest.raises(ValueError):
        allocator.set_custom_allocations(mine.id, "2024-04", PRODUCTION_ORE_KEY, {date(2024, 5, 1): 1.0})


def test_month_status_transitions(mine):
    allocator = ReconciliationAllocator(mine.db)
    assert allocator.month_status(mine.id, "2024-05") == ("open", 0)
    allocator.upsert(mine.id, "2024-05", PRODUCTION_ORE_KEY, reconciled_total=1.0)
    allocator.upsert(mine.id, "2024-05", "hoisting|ore_tonnes_hoisted", reconciled_total=1.0)
    assert allocator.month_status(mine.id, "2024-05") == ("in_progress", 2)
    allocator.lock(mine.id, "2024-05", PRODUCTION_ORE_KEY)
    assert allocator.month_status(mine.id, "2024-05") == ("closed", 2)


def test_month_summary_has_no_side_effects(mine):
    allocator = ReconciliationAllocator(mine.db)
    actual, record, delta = allocator.month_summary(mine.id, "2024-06", PRODUCTION_ORE_KEY)
    assert (actual, record, delta) == (0.0, None, None)
    assert allocator.get(mine.id, "2024-06", PRODUCTION_ORE_KEY) is None

    allocator.upsert(mine.id, "2024-06", PRODUCTION_ORE_KEY, reconciled_total=60.0, basis="captured_all")
    _haul(mine, date(2024, 6, 1) + timedelta(days=3), 15)
    actual, record, delta = allocator.month_summary(mine.id, "2024-06", PRODUCTION_ORE_KEY)
    assert actual == 15
    assert delta == 45
    assert record.delta_snapshot == 60
