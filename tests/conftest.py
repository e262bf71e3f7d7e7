import os
import tempfile
import types
from datetime import datetime, time, timedelta

import pytest
import pytz

# Disable config validation during tests and keep the database out of the repo
os.environ.setdefault("DISABLE_CONFIG_VALIDATION", "1")
os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(tempfile.mkdtemp(prefix='dose_reminder_'), 'test.db')}"
)

from dispatcher import DELIVERY_PREFIX, DispatchResult, delivery_handle
from utils.time import ensure_utc, to_db_time


def utc(*args) -> datetime:
	return datetime(*args, tzinfo=pytz.utc)


class MutableClock:
	def __init__(self, now: datetime):
		self.now = now

	def __call__(self) -> datetime:
		return self.now

	def set(self, now: datetime):
		self.now = now

	def advance(self, minutes: int = 0, seconds: int = 0):
		self.now = self.now + timedelta(minutes=minutes, seconds=seconds)


class FakeStore:
	"""In-memory stand-in for DatabaseManager"""

	def __init__(self):
		self.users = {}
		self.medications = {}
		self.schedules = []
		self.doses = {}
		self.caregivers = []
		self.fail_writes = 0
		self._next_id = 1

	def _id(self) -> int:
		value = self._next_id
		self._next_id += 1
		return value

	# --- fixtures helpers ---
	def add_user(self, id_: int, telegram_id: int = None, timezone: str = "UTC", display_name: str = "Dana"):
		user = types.SimpleNamespace(
			id=id_, telegram_id=telegram_id, timezone=timezone, display_name=display_name, is_active=True
		)
		self.users[id_] = user
		return user

	def add_medication(self, id_: int, user_id: int, name: str = "Aspirin", dosage: str = "100mg"):
		medication = types.SimpleNamespace(id=id_, user_id=user_id, name=name, dosage=dosage, is_active=True)
		self.medications[id_] = medication
		return medication

	def add_schedule(self, user_id: int, medication_id: int, at: str = "08:00", days=(1, 3, 5), tz: str = "UTC",
					 created_at: datetime = None, is_active: bool = True):
		hour, minute = (int(x) for x in at.split(":"))
		schedule = types.SimpleNamespace(
			id=self._id(),
			user_id=user_id,
			medication_id=medication_id,
			time_of_day=time(hour, minute),
			days_of_week=list(days),
			timezone=tz,
			is_active=is_active,
			created_at=created_at or datetime(2023, 12, 1),
		)
		self.schedules.append(schedule)
		return schedule

	def add_caregiver(self, user_id: int, caregiver_user_id: int = None, name: str = "Avi"):
		caregiver = types.SimpleNamespace(
			id=self._id(), user_id=user_id, caregiver_user_id=caregiver_user_id, caregiver_name=name, is_active=True
		)
		self.caregivers.append(caregiver)
		return caregiver

	def add_dose(self, user_id: int, medication_id: int, scheduled_time: datetime, status: str, taken_at=None):
		key = (user_id, medication_id, to_db_time(scheduled_time))
		self.doses[key] = types.SimpleNamespace(
			user_id=user_id,
			medication_id=medication_id,
			scheduled_time=to_db_time(scheduled_time),
			status=status,
			taken_at=to_db_time(taken_at),
			notes=None,
		)
		return self.doses[key]

	def rows_for(self, medication_id: int):
		return sorted((d for d in self.doses.values() if d.medication_id == medication_id), key=lambda d: d.scheduled_time)

	# --- store API ---
	async def get_user_by_id(self, user_id):
		return self.users.get(user_id)

	async def get_user_by_telegram_id(self, telegram_id):
		return next((u for u in self.users.values() if u.telegram_id == telegram_id), None)

	async def get_all_active_users(self):
		return [u for u in self.users.values() if u.is_active]

	async def get_medication_by_id(self, medication_id):
		return self.medications.get(medication_id)

	async def list_active_schedules(self, user_id, medication_id):
		return sorted(
			(s for s in self.schedules if s.user_id == user_id and s.medication_id == medication_id and s.is_active),
			key=lambda s: s.time_of_day,
		)

	async def get_all_active_schedules(self):
		return [s for s in self.schedules if s.is_active]

	async def get_user_caregivers(self, user_id, active_only=True):
		return [c for c in self.caregivers if c.user_id == user_id and (c.is_active or not active_only)]

	async def upsert_dose(self, user_id, medication_id, scheduled_time, status, taken_at=None, notes=None,
						  replace_statuses=None):
		if self.fail_writes:
			self.fail_writes -= 1
			raise RuntimeError("database is locked")
		key = (user_id, medication_id, to_db_time(scheduled_time))
		existing = self.doses.get(key)
		if existing is not None and replace_statuses and existing.status not in replace_statuses:
			return False
		if existing is None:
			self.add_dose(user_id, medication_id, scheduled_time, status, taken_at)
			existing = self.doses[key]
		existing.status = status
		existing.taken_at = to_db_time(taken_at)
		existing.notes = notes
		return True

	async def ensure_scheduled_dose(self, user_id, medication_id, scheduled_time):
		if self.fail_writes:
			self.fail_writes -= 1
			raise RuntimeError("database is locked")
		key = (user_id, medication_id, to_db_time(scheduled_time))
		if key in self.doses:
			return False
		self.add_dose(user_id, medication_id, scheduled_time, "scheduled")
		return True

	async def get_dose(self, user_id, medication_id, scheduled_time):
		return self.doses.get((user_id, medication_id, to_db_time(scheduled_time)))

	async def query_doses(self, user_id, medication_id, from_date, to_date=None):
		start = to_db_time(from_date)
		end = to_db_time(to_date) if to_date is not None else None
		return [
			d for d in self.rows_for(medication_id)
			if d.user_id == user_id and d.scheduled_time >= start and (end is None or d.scheduled_time <= end)
		]

	async def get_doses_between(self, user_id, start, end, status=None):
		start, end = to_db_time(start), to_db_time(end)
		return sorted(
			(
				d for d in self.doses.values()
				if d.user_id == user_id and start <= d.scheduled_time <= end and (status is None or d.status == status)
			),
			key=lambda d: d.scheduled_time,
		)

	async def get_unresolved_doses(self, before):
		cutoff = to_db_time(before)
		return sorted(
			(d for d in self.doses.values() if d.status == "scheduled" and d.scheduled_time <= cutoff),
			key=lambda d: d.scheduled_time,
		)


class FakeDispatcher:
	def __init__(self, native_timers: bool = False):
		self.native_timers = native_timers
		self.sent = []
		self.scheduled = {}
		self.cancelled = []
		self.delivered = set()
		self.fail_for = set()
		self.raise_for = set()

	async def dispatch(self, user_id, title, body, payload=None):
		if user_id in self.raise_for:
			raise RuntimeError("push gateway down")
		if user_id in self.fail_for:
			return DispatchResult(ok=False, error="missing recipient")
		self.sent.append({"user_id": user_id, "title": title, "body": body, "payload": payload})
		return DispatchResult(ok=True, message_id=len(self.sent))

	async def schedule_delivery(self, user_id, title, body, payload, when):
		handle = delivery_handle(payload["occurrence_key"], when)
		self.scheduled[handle] = {"user_id": user_id, "title": title, "body": body, "when": ensure_utc(when)}
		return handle

	async def cancel_delivery(self, handle):
		self.cancelled.append(handle)
		self.scheduled.pop(handle, None)

	async def cancel_deliveries(self, occurrence_key):
		prefix = f"{DELIVERY_PREFIX}{occurrence_key}_"
		handles = [h for h in self.scheduled if h.startswith(prefix)]
		for handle in handles:
			await self.cancel_delivery(handle)
		return len(handles)

	async def has_delivery(self, occurrence_key, when):
		handle = delivery_handle(occurrence_key, when)
		return handle in self.scheduled or handle in self.delivered

	def run_delivery(self, handle):
		"""Simulate the dispatcher's own timer going off"""
		delivery = self.scheduled.pop(handle)
		self.delivered.add(handle)
		self.sent.append({"user_id": delivery["user_id"], "title": delivery["title"], "body": delivery["body"], "payload": None})

	async def start(self):
		pass

	async def stop(self):
		pass

	def titles(self):
		return [m["title"] for m in self.sent]


@pytest.fixture
def clock():
	# Wednesday 2024-01-03, one hour before the 08:00 reminder
	return MutableClock(utc(2024, 1, 3, 7, 0))


@pytest.fixture
def store():
	fake = FakeStore()
	fake.add_user(1, telegram_id=1001)
	fake.add_user(2, telegram_id=2002, display_name="Avi")
	fake.add_medication(10, user_id=1)
	fake.add_schedule(1, 10, "08:00", days=(1, 3, 5))
	fake.add_caregiver(1, caregiver_user_id=2)
	return fake


@pytest.fixture
def dispatcher():
	return FakeDispatcher()


@pytest.fixture
def dose_scheduler(store, dispatcher, clock):
	from scheduler import DoseScheduler

	return DoseScheduler(dispatcher=dispatcher, store=store, clock=clock, retry_delay=0)
