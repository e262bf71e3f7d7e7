"""
SQLite-backed tests for the schedule store and dose log
"""

from datetime import date, datetime, time, timedelta

import pytest
import pytest_asyncio

from conftest import FakeDispatcher, MutableClock, utc
from database import Base, DatabaseManager, engine, get_store, init_database
from scheduler import DoseScheduler

AT = utc(2024, 1, 3, 8, 0)


@pytest_asyncio.fixture
async def db():
    await init_database()
    yield DatabaseManager
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


async def seed(db):
    user = await db.create_user("Dana", telegram_id=1001)
    medication = await db.create_medication(user.id, "Aspirin", "100mg")
    schedule = await db.create_reminder_schedule(user.id, medication.id, "08:00", [1, 3, 5], "UTC")
    return user, medication, schedule


def test_get_store_defaults_to_sql():
    assert get_store() is DatabaseManager


@pytest.mark.asyncio
async def test_schedule_creation_normalizes_input(db):
    user, medication, schedule = await seed(db)
    assert schedule.time_of_day == time(8, 0)
    assert schedule.days_of_week == [1, 3, 5]

    sunday = await db.create_reminder_schedule(user.id, medication.id, "20:30", [0, 3], "UTC", zero_based_weekdays=True)
    assert sunday.days_of_week == [3, 7]

    with pytest.raises(ValueError):
        await db.create_reminder_schedule(user.id, medication.id, "25:00", [1], "UTC")
    with pytest.raises(ValueError):
        await db.create_reminder_schedule(user.id, medication.id, "08:00", [1], "Mars/Olympus")

    schedules = await db.list_active_schedules(user.id, medication.id)
    assert [s.time_of_day for s in schedules] == [time(8, 0), time(20, 30)]

    assert await db.set_schedule_active(sunday.id, False) is True
    assert len(await db.list_active_schedules(user.id, medication.id)) == 1
    assert len(await db.get_all_active_schedules()) == 1


@pytest.mark.asyncio
async def test_upsert_keeps_one_row_per_occurrence(db):
    user, medication, _ = await seed(db)

    assert await db.ensure_scheduled_dose(user.id, medication.id, AT) is True
    assert await db.ensure_scheduled_dose(user.id, medication.id, AT) is False

    written = await db.upsert_dose(user.id, medication.id, AT, "missed", notes="auto", replace_statuses=("scheduled",))
    assert written is True
    again = await db.upsert_dose(user.id, medication.id, AT, "missed", replace_statuses=("scheduled",))
    assert again is False

    taken_at = AT + timedelta(minutes=25)
    flipped = await db.upsert_dose(
        user.id, medication.id, AT, "taken", taken_at=taken_at, replace_statuses=("scheduled", "missed", "skipped")
    )
    assert flipped is True

    rows = await db.query_doses(user.id, medication.id, date(2024, 1, 1))
    assert len(rows) == 1
    assert rows[0].status == "taken"
    assert rows[0].scheduled_time == datetime(2024, 1, 3, 8, 0)
    assert rows[0].taken_at == datetime(2024, 1, 3, 8, 25)

    with pytest.raises(ValueError):
        await db.upsert_dose(user.id, medication.id, AT, "forgotten")


@pytest.mark.asyncio
async def test_dose_queries(db):
    user, medication, _ = await seed(db)
    await db.ensure_scheduled_dose(user.id, medication.id, AT)
    await db.upsert_dose(user.id, medication.id, AT - timedelta(days=2), "missed")
    await db.upsert_dose(user.id, medication.id, AT + timedelta(days=2), "taken", taken_at=AT + timedelta(days=2))

    unresolved = await db.get_unresolved_doses(AT + timedelta(minutes=15))
    assert [d.scheduled_time for d in unresolved] == [datetime(2024, 1, 3, 8, 0)]

    window = await db.query_doses(user.id, medication.id, AT - timedelta(days=1), AT + timedelta(days=1))
    assert len(window) == 1

    missed = await db.get_doses_between(user.id, AT - timedelta(days=3), AT, status="missed")
    assert len(missed) == 1

    fetched = await db.get_dose(user.id, medication.id, AT)
    assert fetched.status == "scheduled"


@pytest.mark.asyncio
async def test_users_and_caregivers(db):
    user, _, _ = await seed(db)
    carer = await db.create_user("Avi", telegram_id=2002)
    await db.create_caregiver(user.id, "Avi", caregiver_user_id=carer.id, relationship="son")

    assert (await db.get_user_by_telegram_id(1001)).id == user.id
    assert (await db.get_user_by_id(carer.id)).display_name == "Avi"
    caregivers = await db.get_user_caregivers(user.id)
    assert [c.caregiver_user_id for c in caregivers] == [carer.id]
    assert caregivers[0].relationship_type == "son"
    assert len(await db.get_all_active_users()) == 2


@pytest.mark.asyncio
async def test_scheduler_against_sql_store(db):
    user, medication, _ = await seed(db)
    clock = MutableClock(AT)
    dose_scheduler = DoseScheduler(dispatcher=FakeDispatcher(), store=db, clock=clock, retry_delay=0)

    await dose_scheduler.fire(user.id, medication.id, AT)
    clock.set(AT + timedelta(minutes=15))
    await dose_scheduler.expire_grace(user.id, medication.id, AT)
    clock.set(AT + timedelta(minutes=25))
    ok, _ = await dose_scheduler.mark_taken(user.id, medication.id)

    assert ok is True
    rows = await db.query_doses(user.id, medication.id, AT - timedelta(days=1))
    assert [r.status for r in rows] == ["taken"]
