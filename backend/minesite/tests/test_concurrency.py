from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from minesite import models
from minesite.database import configure_sqlite
from minesite.services.errors import LockedReconciliationError
from minesite.services.reconciliation import PRODUCTION_ORE_KEY, ReconciliationAllocator
from minesite.services.validation import ShiftRef, ShiftSnapshotStore

DAY = date(2024, 9, 3)
HOISTING = {"activity": "Hoisting", "sub_activity": "Ore", "values": {"Ore Tonnes": 100}}


def _sessions(timeout):
    engine = create_engine(
        "sqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": timeout},
    )
    configure_sqlite(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def writer():
    return _sessions(30)


@pytest.fixture
def impatient():
    return _sessions(0.2)


def _ref(site):
    return ShiftRef(site_id=site.id, date=DAY, dn="DS", operator="op@mine.example")


def test_validate_waits_for_an_open_shift_mutation(site, writer, impatient):
    seed = writer()
    ShiftSnapshotStore(seed).add_activity(_ref(site), HOISTING)
    seed.commit()
    seed.close()

    first = writer()
    second = impatient()
    try:
        store = ShiftSnapshotStore(first)
        shift = store.create_or_get_shift(_ref(site))
        assert shift.validated is False

        with pytest.raises(OperationalError):
            ShiftSnapshotStore(second).validate(site.id, DAY)
        second.rollback()

        store.add_activity(_ref(site), HOISTING)
        first.commit()
    finally:
        first.close()
        second.close()

    check = writer()
    try:
        shift = ShiftSnapshotStore(check).get_shift(_ref(site))
        assert shift.validated is False
        assert len(shift.activities) == 2
        assert shift.totals["Hoisting"]["Ore"]["Ore Tonnes"] == 200
    finally:
        check.close()


def test_lock_cannot_slip_between_check_and_upsert(site, writer, impatient):
    seed = writer()
    ReconciliationAllocator(seed).upsert(site.id, "2024-09", PRODUCTION_ORE_KEY, reconciled_total=10.0)
    seed.commit()
    seed.close()

    first = writer()
    second = impatient()
    try:
        record = ReconciliationAllocator(first).get(site.id, "2024-09", PRODUCTION_ORE_KEY, for_update=True)
        ReconciliationAllocator(first).ensure_unlocked(record)

        with pytest.raises(OperationalError):
            ReconciliationAllocator(second).lock(site.id, "2024-09", PRODUCTION_ORE_KEY)
        second.rollback()

        ReconciliationAllocator(first).upsert(site.id, "2024-09", PRODUCTION_ORE_KEY, reconciled_total=20.0)
        first.commit()
    finally:
        first.close()
        second.close()

    check = writer()
    try:
        allocator = ReconciliationAllocator(check)
        allocator.lock(site.id, "2024-09", PRODUCTION_ORE_KEY)
        check.commit()
        with pytest.raises(LockedReconciliationError):
            allocator.upsert(site.id, "2024-09", PRODUCTION_ORE_KEY, reconciled_total=30.0)
        check.rollback()
        stored = check.query(models.Reconciliation).filter_by(site_id=site.id, month_ym="2024-09").one()
        assert stored.reconciled_total == 20.0
        assert stored.is_locked is True
    finally:
        check.close()
