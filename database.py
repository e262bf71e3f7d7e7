"""
Database models and setup for the Dose Reminder service
Using SQLAlchemy 2.0 with modern typing and async support
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Sequence, Union
from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, Time, UniqueConstraint, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from config import config
from timing import normalize_weekdays
from utils.helpers import coerce_time_of_day
from utils.time import is_valid_timezone, to_db_time

logger = logging.getLogger(__name__)

DOSE_STATUSES = ("scheduled", "taken", "missed", "skipped")
NATURAL_KEY = ("user_id", "medication_id", "scheduled_time")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return to_db_time(value)
    return datetime.combine(value, time.min)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models"""

    pass


class User(Base):
    """User receiving reminders"""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    telegram_id: Mapped[Optional[int]] = mapped_column(Integer, unique=True, index=True, nullable=True)
    display_name: Mapped[str] = mapped_column(String(100), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(50), default="UTC")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    medications: Mapped[List["Medication"]] = relationship("Medication", back_populates="user", cascade="all, delete-orphan")


class Medication(Base):
    """Medication a user takes"""

    __tablename__ = "medications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"))
    name: Mapped[str] = mapped_column(String(200))
    dosage: Mapped[str] = mapped_column(String(100), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="medications")
    schedules: Mapped[List["ReminderSchedule"]] = relationship(
        "ReminderSchedule", back_populates="medication", cascade="all, delete-orphan"
    )


class ReminderSchedule(Base):
    """Local time of day and ISO weekdays (1=Monday .. 7=Sunday) for a reminder"""

    __tablename__ = "reminder_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"))
    medication_id: Mapped[int] = mapped_column(Integer, ForeignKey("medications.id"))
    time_of_day: Mapped[time] = mapped_column(Time)
    days_of_week: Mapped[List[int]] = mapped_column(JSON, default=lambda: [1, 2, 3, 4, 5, 6, 7])
    timezone: Mapped[str] = mapped_column(String(50), default="UTC")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    notification_settings: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    medication: Mapped["Medication"] = relationship("Medication", back_populates="schedules")


class DoseLog(Base):
    """One row per (user, medication, scheduled instant): scheduled, taken, missed or skipped"""

    __tablename__ = "dose_logs"
    __table_args__ = (UniqueConstraint(*NATURAL_KEY, name="uq_dose_logs_natural_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True)
    medication_id: Mapped[int] = mapped_column(Integer, ForeignKey("medications.id"), index=True)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime)  # naive UTC
    status: Mapped[str] = mapped_column(String(20), default="scheduled")
    taken_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class Caregiver(Base):
    """Family member or carer alerted about missed doses"""

    __tablename__ = "caregivers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"))
    caregiver_user_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    caregiver_name: Mapped[str] = mapped_column(String(100))
    relationship_type: Mapped[str] = mapped_column("relationship", String(50), default="family")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


# Create async engine
engine = create_async_engine(config.DATABASE_URL, echo=config.DEBUG, future=True)

# Create async session factory
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def init_database():
    """Initialize the configured backend"""
    if config.DB_BACKEND == "mongo":
        await _init_mongo()
        return
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _dialect_insert():
    # Both dialects expose the same ON CONFLICT API
    if engine.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def _validate_status(status: str):
    if status not in DOSE_STATUSES:
        raise ValueError(f"Unknown dose status: {status}")


def _schedule_values(time_of_day, days_of_week, tz_name, zero_based_weekdays) -> Dict[str, Any]:
    tz_name = (tz_name or config.DEFAULT_TIMEZONE).strip()
    if not is_valid_timezone(tz_name):
        raise ValueError(f"Unknown timezone: {tz_name}")
    return {
        "time_of_day": coerce_time_of_day(time_of_day),
        "days_of_week": normalize_weekdays(days_of_week, zero_based=zero_based_weekdays),
        "timezone": tz_name,
    }


# Database utility functions
class DatabaseManager:
    """Helper class for database operations"""

    @staticmethod
    async def create_user(
        display_name: str, telegram_id: Optional[int] = None, timezone: Optional[str] = None
    ) -> User:
        """Create a new user"""
        async with async_session() as session:
            user = User(
                display_name=display_name, telegram_id=telegram_id, timezone=timezone or config.DEFAULT_TIMEZONE
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    @staticmethod
    async def get_user_by_id(user_id: int) -> Optional[User]:
        """Get user by primary key"""
        async with async_session() as session:
            return await session.get(User, user_id)

    @staticmethod
    async def get_user_by_telegram_id(telegram_id: int) -> Optional[User]:
        """Get user by Telegram ID"""
        async with async_session() as session:
            result = await session.execute(select(User).where(User.telegram_id == telegram_id))
            return result.scalars().first()

    @staticmethod
    async def get_all_active_users() -> List[User]:
        async with async_session() as session:
            result = await session.execute(select(User).where(User.is_active == True))
            return list(result.scalars().all())

    @staticmethod
    async def create_medication(user_id: int, name: str, dosage: str = "") -> Medication:
        async with async_session() as session:
            medication = Medication(user_id=user_id, name=name, dosage=dosage, is_active=True)
            session.add(medication)
            await session.commit()
            await session.refresh(medication)
            return medication

    @staticmethod
    async def get_medication_by_id(medication_id: int) -> Optional[Medication]:
        async with async_session() as session:
            return await session.get(Medication, medication_id)

    @staticmethod
    async def create_reminder_schedule(
        user_id: int,
        medication_id: int,
        time_of_day: Union[str, time],
        days_of_week: Sequence[int],
        timezone: Optional[str] = None,
        notification_settings: Optional[Dict[str, Any]] = None,
        zero_based_weekdays: bool = False,
    ) -> ReminderSchedule:
        """Create a schedule; weekdays are stored in ISO numbering only.

        Pass ``zero_based_weekdays=True`` for clients that number days
        0=Sunday .. 6=Saturday.
        """
        values = _schedule_values(time_of_day, days_of_week, timezone, zero_based_weekdays)
        async with async_session() as session:
            schedule = ReminderSchedule(
                user_id=user_id,
                medication_id=medication_id,
                notification_settings=notification_settings,
                is_active=True,
                **values,
            )
            session.add(schedule)
            await session.commit()
            await session.refresh(schedule)
            return schedule

    @staticmethod
    async def set_schedule_active(schedule_id: int, is_active: bool) -> bool:
        async with async_session() as session:
            schedule = await session.get(ReminderSchedule, schedule_id)
            if not schedule:
                return False
            schedule.is_active = is_active
            await session.commit()
            return True

    @staticmethod
    async def list_active_schedules(user_id: int, medication_id: int) -> List[ReminderSchedule]:
        """Active schedules for one medication, ordered by time of day"""
        async with async_session() as session:
            result = await session.execute(
                select(ReminderSchedule)
                .where(
                    ReminderSchedule.user_id == user_id,
                    ReminderSchedule.medication_id == medication_id,
                    ReminderSchedule.is_active == True,
                )
                .order_by(ReminderSchedule.time_of_day.asc())
            )
            return list(result.scalars().all())

    @staticmethod
    async def get_all_active_schedules() -> List[ReminderSchedule]:
        async with async_session() as session:
            result = await session.execute(
                select(ReminderSchedule)
                .join(Medication, ReminderSchedule.medication_id == Medication.id)
                .where(ReminderSchedule.is_active == True, Medication.is_active == True)
            )
            return list(result.scalars().all())

    @staticmethod
    async def upsert_dose(
        user_id: int,
        medication_id: int,
        scheduled_time: datetime,
        status: str,
        taken_at: Optional[datetime] = None,
        notes: Optional[str] = None,
        replace_statuses: Optional[Sequence[str]] = None,
    ) -> bool:
        """Insert or update the row for the natural key.

        With ``replace_statuses`` an existing row is only overwritten while its
        status is one of them. Returns True when a row was written.
        """
        _validate_status(status)
        now = _utcnow()
        insert = _dialect_insert()
        stmt = insert(DoseLog).values(
            user_id=user_id,
            medication_id=medication_id,
            scheduled_time=to_db_time(scheduled_time),
            status=status,
            taken_at=to_db_time(taken_at),
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=list(NATURAL_KEY),
            set_={
                "status": stmt.excluded.status,
                "taken_at": stmt.excluded.taken_at,
                "notes": stmt.excluded.notes,
                "updated_at": stmt.excluded.updated_at,
            },
            where=DoseLog.status.in_(list(replace_statuses)) if replace_statuses else None,
        )
        async with async_session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    @staticmethod
    async def ensure_scheduled_dose(user_id: int, medication_id: int, scheduled_time: datetime) -> bool:
        """Insert a 'scheduled' row unless one already exists for the key"""
        insert = _dialect_insert()
        now = _utcnow()
        stmt = (
            insert(DoseLog)
            .values(
                user_id=user_id,
                medication_id=medication_id,
                scheduled_time=to_db_time(scheduled_time),
                status="scheduled",
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=list(NATURAL_KEY))
        )
        async with async_session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    @staticmethod
    async def get_dose(user_id: int, medication_id: int, scheduled_time: datetime) -> Optional[DoseLog]:
        async with async_session() as session:
            result = await session.execute(
                select(DoseLog).where(
                    DoseLog.user_id == user_id,
                    DoseLog.medication_id == medication_id,
                    DoseLog.scheduled_time == to_db_time(scheduled_time),
                )
            )
            return result.scalars().first()

    @staticmethod
    async def query_doses(
        user_id: int,
        medication_id: int,
        from_date: Union[date, datetime],
        to_date: Optional[Union[date, datetime]] = None,
    ) -> List[DoseLog]:
        """Dose rows for a medication scheduled at or after from_date, oldest first"""
        conditions = [
            DoseLog.user_id == user_id,
            DoseLog.medication_id == medication_id,
            DoseLog.scheduled_time >= _as_datetime(from_date),
        ]
        if to_date is not None:
            conditions.append(DoseLog.scheduled_time <= _as_datetime(to_date))
        async with async_session() as session:
            result = await session.execute(select(DoseLog).where(*conditions).order_by(DoseLog.scheduled_time.asc()))
            return list(result.scalars().all())

    @staticmethod
    async def get_doses_between(
        user_id: int, start: datetime, end: datetime, status: Optional[str] = None
    ) -> List[DoseLog]:
        """All of a user's dose rows in [start, end], any medication"""
        conditions = [
            DoseLog.user_id == user_id,
            DoseLog.scheduled_time >= to_db_time(start),
            DoseLog.scheduled_time <= to_db_time(end),
        ]
        if status is not None:
            conditions.append(DoseLog.status == status)
        async with async_session() as session:
            result = await session.execute(select(DoseLog).where(*conditions).order_by(DoseLog.scheduled_time.asc()))
            return list(result.scalars().all())

    @staticmethod
    async def get_unresolved_doses(before: datetime) -> List[DoseLog]:
        """Rows still 'scheduled' whose scheduled time is at or before the cutoff"""
        async with async_session() as session:
            result = await session.execute(
                select(DoseLog)
                .where(DoseLog.status == "scheduled", DoseLog.scheduled_time <= to_db_time(before))
                .order_by(DoseLog.scheduled_time.asc())
            )
            return list(result.scalars().all())

    @staticmethod
    async def create_caregiver(
        user_id: int,
        caregiver_name: str,
        caregiver_user_id: Optional[int] = None,
        relationship: str = "family",
    ) -> Caregiver:
        async with async_session() as session:
            caregiver = Caregiver(
                user_id=user_id,
                caregiver_user_id=caregiver_user_id,
                caregiver_name=caregiver_name,
                relationship_type=relationship,
                is_active=True,
            )
            session.add(caregiver)
            await session.commit()
            await session.refresh(caregiver)
            return caregiver

    @staticmethod
    async def get_user_caregivers(user_id: int, active_only: bool = True) -> List[Caregiver]:
        """Get caregivers for a user"""
        async with async_session() as session:
            stmt = select(Caregiver).where(Caregiver.user_id == user_id)
            if active_only:
                stmt = stmt.where(Caregiver.is_active == True)
            result = await session.execute(stmt)
            return list(result.scalars().all())


# ==============================
# MongoDB Backend (Motor)
# ==============================

_mongo_client = None
_mongo_db = None


async def _init_mongo():
    global _mongo_client, _mongo_db
    if _mongo_client is None:
        from motor.motor_asyncio import AsyncIOMotorClient

        _mongo_client = AsyncIOMotorClient(config.MONGODB_URI)
        _mongo_db = _mongo_client[config.MONGODB_DB]
        # Create indexes (idempotent)
        await _mongo_db.users.create_index("telegram_id", unique=True, sparse=True)
        await _mongo_db.medications.create_index([("user_id", 1)])
        await _mongo_db.reminder_schedules.create_index([("user_id", 1), ("medication_id", 1)])
        await _mongo_db.dose_logs.create_index(
            [("user_id", 1), ("medication_id", 1), ("scheduled_time", 1)], unique=True
        )
        await _mongo_db.dose_logs.create_index([("status", 1), ("scheduled_time", 1)])
        await _mongo_db.caregivers.create_index([("user_id", 1)])
    return _mongo_db


async def _next_id(collection: str) -> int:
    from pymongo import ReturnDocument

    db = await _init_mongo()
    doc = await db.counters.find_one_and_update(
        {"_id": collection}, {"$inc": {"seq": 1}}, upsert=True, return_document=ReturnDocument.AFTER
    )
    return int(doc["seq"])


def _strip_id(doc: dict) -> dict:
    return {k: v for k, v in doc.items() if k != "_id"}


def _dose_key(user_id: int, medication_id: int, scheduled_time: datetime) -> dict:
    return {"user_id": user_id, "medication_id": medication_id, "scheduled_time": to_db_time(scheduled_time)}


def _schedule_from_doc(doc: dict) -> ReminderSchedule:
    data = _strip_id(doc)
    data["time_of_day"] = coerce_time_of_day(data["time_of_day"])
    return ReminderSchedule(**data)


class DatabaseManagerMongo:
    """Same operations as DatabaseManager, backed by MongoDB"""

    @staticmethod
    async def create_user(
        display_name: str, telegram_id: Optional[int] = None, timezone: Optional[str] = None
    ) -> User:
        db = await _init_mongo()
        doc = {
            "id": await _next_id("users"),
            "display_name": display_name,
            "is_active": True,
            "timezone": timezone or config.DEFAULT_TIMEZONE,
            "created_at": _utcnow(),
        }
        if telegram_id is not None:
            doc["telegram_id"] = telegram_id
        await db.users.insert_one(dict(doc))
        return User(**doc)

    @staticmethod
    async def get_user_by_id(user_id: int) -> Optional[User]:
        db = await _init_mongo()
        doc = await db.users.find_one({"id": user_id})
        return User(**_strip_id(doc)) if doc else None

    @staticmethod
    async def get_user_by_telegram_id(telegram_id: int) -> Optional[User]:
        db = await _init_mongo()
        doc = await db.users.find_one({"telegram_id": telegram_id})
        return User(**_strip_id(doc)) if doc else None

    @staticmethod
    async def get_all_active_users() -> List[User]:
        db = await _init_mongo()
        return [User(**_strip_id(doc)) async for doc in db.users.find({"is_active": True})]

    @staticmethod
    async def create_medication(user_id: int, name: str, dosage: str = "") -> Medication:
        db = await _init_mongo()
        doc = {
            "id": await _next_id("medications"),
            "user_id": user_id,
            "name": name,
            "dosage": dosage,
            "is_active": True,
            "created_at": _utcnow(),
        }
        await db.medications.insert_one(dict(doc))
        return Medication(**doc)

    @staticmethod
    async def get_medication_by_id(medication_id: int) -> Optional[Medication]:
        db = await _init_mongo()
        doc = await db.medications.find_one({"id": medication_id})
        return Medication(**_strip_id(doc)) if doc else None

    @staticmethod
    async def create_reminder_schedule(
        user_id: int,
        medication_id: int,
        time_of_day: Union[str, time],
        days_of_week: Sequence[int],
        timezone: Optional[str] = None,
        notification_settings: Optional[Dict[str, Any]] = None,
        zero_based_weekdays: bool = False,
    ) -> ReminderSchedule:
        values = _schedule_values(time_of_day, days_of_week, timezone, zero_based_weekdays)
        db = await _init_mongo()
        doc = {
            "id": await _next_id("reminder_schedules"),
            "user_id": user_id,
            "medication_id": medication_id,
            "time_of_day": values["time_of_day"].strftime("%H:%M"),
            "days_of_week": values["days_of_week"],
            "timezone": values["timezone"],
            "is_active": True,
            "notification_settings": notification_settings,
            "created_at": _utcnow(),
        }
        await db.reminder_schedules.insert_one(dict(doc))
        return _schedule_from_doc(doc)

    @staticmethod
    async def set_schedule_active(schedule_id: int, is_active: bool) -> bool:
        db = await _init_mongo()
        result = await db.reminder_schedules.update_one({"id": schedule_id}, {"$set": {"is_active": is_active}})
        return result.matched_count > 0

    @staticmethod
    async def list_active_schedules(user_id: int, medication_id: int) -> List[ReminderSchedule]:
        db = await _init_mongo()
        cursor = db.reminder_schedules.find(
            {"user_id": user_id, "medication_id": medication_id, "is_active": True}
        ).sort("time_of_day", 1)
        return [_schedule_from_doc(doc) async for doc in cursor]

    @staticmethod
    async def get_all_active_schedules() -> List[ReminderSchedule]:
        db = await _init_mongo()
        active_ids = [doc["id"] async for doc in db.medications.find({"is_active": True}, {"id": 1})]
        cursor = db.reminder_schedules.find({"is_active": True, "medication_id": {"$in": active_ids}})
        return [_schedule_from_doc(doc) async for doc in cursor]

    @staticmethod
    async def upsert_dose(
        user_id: int,
        medication_id: int,
        scheduled_time: datetime,
        status: str,
        taken_at: Optional[datetime] = None,
        notes: Optional[str] = None,
        replace_statuses: Optional[Sequence[str]] = None,
    ) -> bool:
        _validate_status(status)
        db = await _init_mongo()
        key = _dose_key(user_id, medication_id, scheduled_time)
        now = _utcnow()
        changes = {"status": status, "taken_at": to_db_time(taken_at), "notes": notes, "updated_at": now}
        if replace_statuses:
            result = await db.dose_logs.update_one(
                {**key, "status": {"$in": list(replace_statuses)}}, {"$set": changes}
            )
            if result.matched_count:
                return True
            # Only insert when no row exists at all for the key
            result = await db.dose_logs.update_one(
                key, {"$setOnInsert": {**changes, "id": await _next_id("dose_logs"), "created_at": now}}, upsert=True
            )
            return result.upserted_id is not None
        existing = await db.dose_logs.find_one(key, {"id": 1})
        on_insert = {"created_at": now}
        if not existing:
            on_insert["id"] = await _next_id("dose_logs")
        await db.dose_logs.update_one(key, {"$set": changes, "$setOnInsert": on_insert}, upsert=True)
        return True

    @staticmethod
    async def ensure_scheduled_dose(user_id: int, medication_id: int, scheduled_time: datetime) -> bool:
        db = await _init_mongo()
        key = _dose_key(user_id, medication_id, scheduled_time)
        if await db.dose_logs.find_one(key, {"id": 1}):
            return False
        now = _utcnow()
        result = await db.dose_logs.update_one(
            key,
            {
                "$setOnInsert": {
                    "id": await _next_id("dose_logs"),
                    "status": "scheduled",
                    "taken_at": None,
                    "notes": None,
                    "created_at": now,
                    "updated_at": now,
                }
            },
            upsert=True,
        )
        return result.upserted_id is not None

    @staticmethod
    async def get_dose(user_id: int, medication_id: int, scheduled_time: datetime) -> Optional[DoseLog]:
        db = await _init_mongo()
        doc = await db.dose_logs.find_one(_dose_key(user_id, medication_id, scheduled_time))
        return DoseLog(**_strip_id(doc)) if doc else None

    @staticmethod
    async def query_doses(
        user_id: int,
        medication_id: int,
        from_date: Union[date, datetime],
        to_date: Optional[Union[date, datetime]] = None,
    ) -> List[DoseLog]:
        db = await _init_mongo()
        time_filter = {"$gte": _as_datetime(from_date)}
        if to_date is not None:
            time_filter["$lte"] = _as_datetime(to_date)
        cursor = db.dose_logs.find(
            {"user_id": user_id, "medication_id": medication_id, "scheduled_time": time_filter}
        ).sort("scheduled_time", 1)
        return [DoseLog(**_strip_id(doc)) async for doc in cursor]

    @staticmethod
    async def get_doses_between(
        user_id: int, start: datetime, end: datetime, status: Optional[str] = None
    ) -> List[DoseLog]:
        db = await _init_mongo()
        query = {"user_id": user_id, "scheduled_time": {"$gte": to_db_time(start), "$lte": to_db_time(end)}}
        if status is not None:
            query["status"] = status
        cursor = db.dose_logs.find(query).sort("scheduled_time", 1)
        return [DoseLog(**_strip_id(doc)) async for doc in cursor]

    @staticmethod
    async def get_unresolved_doses(before: datetime) -> List[DoseLog]:
        db = await _init_mongo()
        cursor = db.dose_logs.find({"status": "scheduled", "scheduled_time": {"$lte": to_db_time(before)}}).sort(
            "scheduled_time", 1
        )
        return [DoseLog(**_strip_id(doc)) async for doc in cursor]

    @staticmethod
    async def create_caregiver(
        user_id: int,
        caregiver_name: str,
        caregiver_user_id: Optional[int] = None,
        relationship: str = "family",
    ) -> Caregiver:
        db = await _init_mongo()
        doc = {
            "id": await _next_id("caregivers"),
            "user_id": user_id,
            "caregiver_user_id": caregiver_user_id,
            "caregiver_name": caregiver_name,
            "relationship_type": relationship,
            "is_active": True,
            "created_at": _utcnow(),
        }
        await db.caregivers.insert_one(dict(doc))
        return Caregiver(**doc)

    @staticmethod
    async def get_user_caregivers(user_id: int, active_only: bool = True) -> List[Caregiver]:
        db = await _init_mongo()
        query = {"user_id": user_id}
        if active_only:
            query["is_active"] = True
        return [Caregiver(**_strip_id(doc)) async for doc in db.caregivers.find(query)]


def get_store():
    """Store class for the configured backend"""
    if config.DB_BACKEND == "mongo":
        return DatabaseManagerMongo
    return DatabaseManager
