"""
Dose scheduling: fire timers, grace period, snooze and missed-dose handling
Using APScheduler 3.x with async support
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR, JobExecutionEvent

from adherence import AdherenceStats, compute_adherence_stats
from config import config
from errors import PersistenceError
from timing import (
    GRACE_PERIOD,
    NOT_SCHEDULED,
    TAKEN_MATCH_WINDOW,
    DoseTiming,
    current_occurrence,
    is_occurrence,
    next_dose_time,
    occurrences_between,
    resolve_dose_timing,
    schedule_timezone,
    was_confirmed,
)
from utils.helpers import async_retry, format_time_12h, format_time_until
from utils.time import ensure_aware, ensure_utc, get_timezone, utc_now

logger = logging.getLogger(__name__)

ActionResult = Tuple[bool, str]

CONFIRMED_STATUSES = ("taken", "skipped")
REGISTRY_RETENTION = timedelta(hours=24)
PERIODIC_JOB_ID = "dose_periodic_pass"
DIGEST_JOB_ID = "missed_dose_digest"


class DoseState(str, Enum):
    IDLE = "idle"
    FIRED = "fired"
    SNOOZED = "snoozed"
    TAKEN = "taken"
    SKIPPED = "skipped"
    MISSED = "missed"


TERMINAL_STATES = frozenset({DoseState.TAKEN, DoseState.SKIPPED, DoseState.MISSED})
AWAITING_ACK_STATES = frozenset({DoseState.FIRED, DoseState.SNOOZED})


def occurrence_key(medication_id: int, scheduled_time: datetime) -> str:
    return f"dose_{medication_id}_{ensure_utc(scheduled_time):%Y%m%dT%H%MZ}"


@dataclass
class Occurrence:
    """In-memory state of one scheduled dose"""

    user_id: int
    medication_id: int
    scheduled_time: datetime
    state: DoseState = DoseState.IDLE
    snooze_count: int = 0
    job_id: Optional[str] = None
    delivery_handle: Optional[str] = None

    @property
    def key(self) -> str:
        return occurrence_key(self.medication_id, self.scheduled_time)

    @property
    def is_live(self) -> bool:
        return self.state not in TERMINAL_STATES


class OccurrenceRegistry:
    """Occurrences keyed by (medication, scheduled instant)"""

    def __init__(self):
        self._items: Dict[str, Occurrence] = {}

    def __len__(self):
        return len(self._items)

    def get(self, medication_id: int, scheduled_time: datetime) -> Optional[Occurrence]:
        return self._items.get(occurrence_key(medication_id, scheduled_time))

    def get_or_create(self, user_id: int, medication_id: int, scheduled_time: datetime) -> Occurrence:
        key = occurrence_key(medication_id, scheduled_time)
        occ = self._items.get(key)
        if occ is None:
            occ = Occurrence(user_id=user_id, medication_id=medication_id, scheduled_time=ensure_utc(scheduled_time))
            self._items[key] = occ
        return occ

    def remove(self, occ: Occurrence):
        self._items.pop(occ.key, None)

    def for_medication(self, medication_id: int) -> List[Occurrence]:
        return sorted(
            (o for o in self._items.values() if o.medication_id == medication_id), key=lambda o: o.scheduled_time
        )

    def latest_awaiting_ack(self, user_id: int, medication_id: int) -> Optional[Occurrence]:
        """Most recent fired or snoozed occurrence for the medication"""
        candidates = [
            o for o in self.for_medication(medication_id) if o.user_id == user_id and o.state in AWAITING_ACK_STATES
        ]
        return candidates[-1] if candidates else None

    def prune(self, before: datetime, is_live: Callable[[Occurrence], bool] = None) -> int:
        """Drop occurrences older than ``before`` that are no longer live"""
        is_live = is_live or (lambda o: o.is_live)
        stale = [k for k, o in self._items.items() if o.scheduled_time < before and not is_live(o)]
        for key in stale:
            del self._items[key]
        return len(stale)


@dataclass
class DoseEvent:
    type: str
    user_id: int
    medication_id: int
    scheduled_time: datetime


class DoseActionType(str, Enum):
    TAKEN = "taken"
    SNOOZE = "snooze"
    SKIP = "skip"
    VIEW = "view"


@dataclass
class DoseActionEvent:
    type: DoseActionType
    user_id: int
    medication_id: int
    scheduled_time: Optional[datetime] = None
    minutes: Optional[int] = None


EVENT_TYPES = ("dose_due", "dose_missed")


def describe_timing(timing: DoseTiming, now: datetime, tz=None) -> str:
    """One-line status for the next-dose view; clock times are shown in ``tz``"""
    if not timing.is_scheduled:
        return "No active reminders"
    if timing.is_overdue:
        since = format_time_12h(ensure_aware(timing.current_reminder_time, tz))
        return f"{config.EMOJIS['warning']} Dose overdue since {since}"
    if timing.is_due:
        return f"{config.EMOJIS['medicine']} Dose due now"
    if timing.next_dose_time is None:
        return "No upcoming dose"
    minutes = int((timing.next_dose_time - ensure_utc(now)).total_seconds() // 60)
    return f"{config.EMOJIS['clock']} Next dose in {format_time_until(minutes)}"


class DoseScheduler:
    """Per-occurrence reminder state machine driven by APScheduler timers"""

    def __init__(self, dispatcher=None, store=None, clock: Callable[[], datetime] = None, retry_delay: float = None):
        if store is None:
            from database import get_store

            store = get_store()
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or utc_now
        self.retry_delay = config.PERSISTENCE_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.registry = OccurrenceRegistry()
        self._subscribers: Dict[str, List[Callable]] = {name: [] for name in EVENT_TYPES}
        self._actions: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None

        # Configure APScheduler
        jobstores = {"default": MemoryJobStore()}
        executors = {"default": AsyncIOExecutor()}

        job_defaults = {"coalesce": True, "max_instances": 3, "misfire_grace_time": 30}

        self.scheduler = AsyncIOScheduler(jobstores=jobstores, executors=executors, job_defaults=job_defaults, timezone="UTC")

        # Add event listeners
        self.scheduler.add_listener(self._job_executed_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    @property
    def native(self) -> bool:
        return bool(self.dispatcher is not None and self.dispatcher.native_timers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start timers, the action consumer and the periodic jobs"""
        try:
            self.scheduler.start()
            logger.info("Dose scheduler started successfully")

            self._ensure_consumer()

            self.scheduler.add_job(
                func=self.periodic_pass,
                trigger=IntervalTrigger(seconds=config.RECOMPUTE_INTERVAL_SECONDS),
                id=PERIODIC_JOB_ID,
                name="Reconcile and re-arm dose timers",
                replace_existing=True,
            )
            self._schedule_missed_digest()

            # Repair anything that elapsed while we were down, then arm timers
            await self.periodic_pass()

        except Exception as e:
            logger.error(f"Failed to start dose scheduler: {e}")
            raise

    async def stop(self):
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Dose scheduler stopped")

    def _schedule_missed_digest(self):
        try:
            hour, minute = (int(part) for part in config.MISSED_DIGEST_TIME.split(":"))
            self.scheduler.add_job(
                func=self.send_missed_digest,
                trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
                id=DIGEST_JOB_ID,
                name="Send missed dose digest",
                replace_existing=True,
            )
            logger.info("Scheduled missed dose digest")
        except Exception as e:
            logger.error(f"Failed to schedule missed dose digest: {e}")

    def _job_executed_listener(self, event: JobExecutionEvent):
        """Listen to job execution events"""
        if event.exception:
            logger.error(f"Job {event.job_id} crashed: {event.exception}")
        else:
            logger.debug(f"Job {event.job_id} executed successfully")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event_type: str, callback: Callable[[DoseEvent], Any]) -> Callable[[], None]:
        """Register a sync or async callback; returns an unsubscribe function"""
        if event_type not in self._subscribers:
            raise ValueError(f"Unknown event type: {event_type}")
        self._subscribers[event_type].append(callback)

        def unsubscribe():
            if callback in self._subscribers[event_type]:
                self._subscribers[event_type].remove(callback)

        return unsubscribe

    async def _emit(self, event: DoseEvent):
        for callback in list(self._subscribers[event.type]):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"{event.type} subscriber failed: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _persist(self, operation: str, func):
        try:
            return await async_retry(func, retries=2, delay_seconds=self.retry_delay)
        except Exception as e:
            logger.error(f"{operation} failed after retry: {e}")
            raise PersistenceError(operation, e) from e

    def _arm(self, occ: Occurrence, run_date: datetime, func) -> str:
        # One job per occurrence: whatever timer was pending is replaced
        job_id = occ.key
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)

        self.scheduler.add_job(
            func=func,
            trigger=DateTrigger(run_date=run_date),
            id=job_id,
            args=[occ.user_id, occ.medication_id, occ.scheduled_time],
            name=f"{func.__name__} for medication {occ.medication_id}",
            replace_existing=True,
        )
        occ.job_id = job_id
        return job_id

    def _cancel_timer(self, occ: Occurrence):
        if occ.job_id and self.scheduler.get_job(occ.job_id):
            self.scheduler.remove_job(occ.job_id)
        occ.job_id = None

    async def _cancel_deliveries(self, key: str):
        # By key, so deliveries registered before a restart are found too
        if not self.native:
            return
        try:
            await self.dispatcher.cancel_deliveries(key)
        except Exception as e:
            logger.warning(f"Failed to cancel deliveries for {key}: {e}")

    async def _cancel_delivery(self, occ: Occurrence):
        await self._cancel_deliveries(occ.key)
        occ.delivery_handle = None

    async def _cancel_all(self, occ: Occurrence):
        self._cancel_timer(occ)
        await self._cancel_delivery(occ)

    async def _confirmed_times(self, user_id: int, medication_id: int, start: datetime, end: datetime) -> List[datetime]:
        doses = await self.store.query_doses(user_id, medication_id, start - TAKEN_MATCH_WINDOW, end + TAKEN_MATCH_WINDOW)
        return [ensure_utc(d.scheduled_time) for d in doses if d.status in CONFIRMED_STATUSES]

    async def _taken_nearby(self, user_id: int, medication_id: int, scheduled_time: datetime) -> bool:
        doses = await self.store.query_doses(
            user_id, medication_id, scheduled_time - TAKEN_MATCH_WINDOW, scheduled_time + TAKEN_MATCH_WINDOW
        )
        return was_confirmed(scheduled_time, [d.scheduled_time for d in doses if d.status == "taken"])

    @staticmethod
    def _reminder_text(medication) -> Tuple[str, str]:
        name = getattr(medication, "name", None) or "your medication"
        dosage = getattr(medication, "dosage", None)
        body = f"Time to take {name} ({dosage})" if dosage else f"Time to take {name}"
        return config.REMINDER_TITLE, body

    @staticmethod
    def _payload(occ: Occurrence, **extra) -> Dict[str, Any]:
        payload = {
            "type": "reminder",
            "medication_id": occ.medication_id,
            "scheduled_time": occ.scheduled_time.isoformat(),
            "scheduled_ts": int(occ.scheduled_time.timestamp()),
            "occurrence_key": occ.key,
            "action_required": True,
        }
        payload.update(extra)
        return payload

    async def _register_delivery(self, occ: Occurrence, when: datetime):
        if not self.native:
            return
        try:
            medication = await self.store.get_medication_by_id(occ.medication_id)
            title, body = self._reminder_text(medication)
            occ.delivery_handle = await self.dispatcher.schedule_delivery(
                occ.user_id, title, body, self._payload(occ), when
            )
        except Exception as e:
            logger.warning(f"Could not register delivery for {occ.key}: {e}")
            occ.delivery_handle = None

    async def _has_native_delivery(self, occ: Occurrence) -> bool:
        if not self.native:
            return False
        try:
            return await self.dispatcher.has_delivery(occ.key, occ.scheduled_time)
        except Exception as e:
            logger.warning(f"Could not check delivery for {occ.key}: {e}")
            return False

    async def _dispatch_reminder(self, occ: Occurrence):
        if self.dispatcher is None:
            logger.warning(f"No dispatcher configured, reminder {occ.key} not sent")
            return
        try:
            medication = await self.store.get_medication_by_id(occ.medication_id)
            title, body = self._reminder_text(medication)
            result = await self.dispatcher.dispatch(occ.user_id, title, body, self._payload(occ))
            if not result.ok:
                logger.warning(f"Reminder {occ.key} not delivered: {result.error}")
        except Exception as e:
            logger.error(f"Failed to send reminder {occ.key}: {e}")

    # ------------------------------------------------------------------
    # Fire timers
    # ------------------------------------------------------------------

    async def arm_next_fire(
        self, user_id: int, medication_id: int, schedules: Optional[List] = None, after: Optional[datetime] = None
    ) -> Optional[Occurrence]:
        """Arm the fire timer for the next occurrence at or after ``after`` (default now)"""
        if schedules is None:
            schedules = await self.store.list_active_schedules(user_id, medication_id)
        at = next_dose_time(schedules, after or self.clock())
        if at is None:
            return None

        occ = self.registry.get_or_create(user_id, medication_id, at)
        if occ.state != DoseState.IDLE or occ.job_id:
            return occ

        self._arm(occ, at, self._on_fire_timer)
        await self._register_delivery(occ, at)
        logger.debug(f"Armed fire timer {occ.key}")
        return occ

    async def _on_fire_timer(self, user_id: int, medication_id: int, scheduled_time: datetime):
        occ = self.registry.get(medication_id, scheduled_time)
        if occ is not None:
            occ.job_id = None
        schedules = await self.store.list_active_schedules(user_id, medication_id)
        if not is_occurrence(schedules, scheduled_time):
            # Schedule was deactivated or edited since the timer was armed
            logger.info(f"Dropping stale fire timer for medication {medication_id} at {scheduled_time.isoformat()}")
            if occ is not None:
                await self._cancel_delivery(occ)
                self.registry.remove(occ)
            else:
                await self._cancel_deliveries(occurrence_key(medication_id, scheduled_time))
            return
        await self.fire(user_id, medication_id, scheduled_time, schedules=schedules)

    async def _on_refire_timer(self, user_id: int, medication_id: int, scheduled_time: datetime):
        occ = self.registry.get(medication_id, scheduled_time)
        if occ is None or occ.state != DoseState.SNOOZED:
            return
        occ.job_id = None
        schedules = await self.store.list_active_schedules(user_id, medication_id)
        if not is_occurrence(schedules, scheduled_time):
            logger.info(f"Dropping snoozed reminder {occ.key}: schedule no longer active")
            await self._cancel_delivery(occ)
            self.registry.remove(occ)
            return
        await self.fire(user_id, medication_id, scheduled_time, schedules=schedules, refire=True)

    async def fire(
        self,
        user_id: int,
        medication_id: int,
        scheduled_time: datetime,
        schedules: Optional[List] = None,
        refire: bool = False,
    ) -> Occurrence:
        """Deliver the reminder for an occurrence and start its grace timer"""
        scheduled_time = ensure_utc(scheduled_time)
        now = self.clock()
        occ = self.registry.get_or_create(user_id, medication_id, scheduled_time)
        if occ.state in TERMINAL_STATES or (occ.state == DoseState.FIRED and not refire):
            return occ

        self._cancel_timer(occ)

        created = True
        try:
            created = await self._persist(
                "ensure scheduled dose",
                lambda: self.store.ensure_scheduled_dose(user_id, medication_id, scheduled_time),
            )
        except PersistenceError:
            # Reconciliation inserts the missed row later if nothing else does
            pass

        if occ.delivery_handle or (not refire and await self._has_native_delivery(occ)):
            # Delivered by the dispatcher's own timer
            occ.delivery_handle = None
        elif not refire and not created:
            # The row predates this fire: an earlier process already sent it
            logger.info(f"{occ.key} was fired before, reminder not sent again")
        else:
            await self._dispatch_reminder(occ)

        occ.state = DoseState.FIRED
        grace_from = now if refire else scheduled_time
        self._arm(occ, grace_from + GRACE_PERIOD, self._on_grace_timer)
        logger.info(f"Fired {occ.key} (snoozes: {occ.snooze_count})")

        await self._emit(DoseEvent("dose_due", user_id, medication_id, scheduled_time))

        if not refire:
            await self.arm_next_fire(user_id, medication_id, schedules, after=scheduled_time + timedelta(seconds=1))
        return occ

    # ------------------------------------------------------------------
    # Grace period
    # ------------------------------------------------------------------

    async def _on_grace_timer(self, user_id: int, medication_id: int, scheduled_time: datetime):
        await self.expire_grace(user_id, medication_id, scheduled_time)

    async def expire_grace(self, user_id: int, medication_id: int, scheduled_time: datetime) -> Optional[Occurrence]:
        """Mark a fired occurrence missed unless a taken entry is close to it"""
        scheduled_time = ensure_utc(scheduled_time)
        occ = self.registry.get(medication_id, scheduled_time)
        if occ is None or occ.state != DoseState.FIRED:
            return occ
        occ.job_id = None

        try:
            if await self._taken_nearby(user_id, medication_id, scheduled_time):
                occ.state = DoseState.TAKEN
                logger.info(f"{occ.key} already confirmed, not marking missed")
                return occ

            written = await self._persist(
                "mark dose missed",
                lambda: self.store.upsert_dose(
                    user_id,
                    medication_id,
                    scheduled_time,
                    "missed",
                    notes=config.AUTO_MISSED_NOTE,
                    replace_statuses=("scheduled",),
                ),
            )
        except Exception as e:
            # Left for reconciliation
            logger.error(f"Grace expiry for {occ.key} failed: {e}")
            self.registry.remove(occ)
            return None

        if not written:
            dose = await self.store.get_dose(user_id, medication_id, scheduled_time)
            status = getattr(dose, "status", "missed")
            occ.state = DoseState(status) if status in ("taken", "skipped", "missed") else DoseState.MISSED
            logger.info(f"{occ.key} was resolved as {occ.state.value} before grace expiry")
            return occ

        occ.state = DoseState.MISSED
        logger.info(f"Marked {occ.key} missed after grace period")
        await self._emit(DoseEvent("dose_missed", user_id, medication_id, scheduled_time))
        await self._notify_missed(user_id, medication_id, scheduled_time, notify_user=True)
        return occ

    async def _notify_missed(self, user_id: int, medication_id: int, scheduled_time: datetime, notify_user: bool):
        """User and caregiver alerts; failures never undo the missed mark"""
        if self.dispatcher is None:
            return
        try:
            medication = await self.store.get_medication_by_id(medication_id)
            user = await self.store.get_user_by_id(user_id)
        except Exception as e:
            logger.error(f"Failed to load missed dose details: {e}")
            return

        name = getattr(medication, "name", None) or "medication"
        local_time = ensure_aware(ensure_utc(scheduled_time), getattr(user, "timezone", None))
        when = format_time_12h(local_time)

        if notify_user:
            try:
                await self.dispatcher.dispatch(
                    user_id,
                    config.MISSED_TITLE,
                    f"You missed your {name} dose scheduled for {when}",
                    {"type": "missed", "medication_id": medication_id, "action_required": False},
                )
            except Exception as e:
                logger.error(f"Failed to notify user {user_id} about missed dose: {e}")

        await self._notify_caregivers(user, medication, when)

    async def _notify_caregivers(self, user, medication, when: str):
        if user is None:
            return
        try:
            caregivers = await self.store.get_user_caregivers(user.id)
        except Exception as e:
            logger.error(f"Failed to load caregivers for user {user.id}: {e}")
            return

        display_name = getattr(user, "display_name", None) or "Your family member"
        name = getattr(medication, "name", None) or "a medication"
        dosage = getattr(medication, "dosage", None)
        med_text = f"{name} ({dosage})" if dosage else name
        body = f"{display_name} missed {med_text} scheduled for {when}"

        for caregiver in caregivers:
            if not getattr(caregiver, "caregiver_user_id", None):
                logger.warning(f"Caregiver {caregiver.caregiver_name} of user {user.id} has no account, skipped")
                continue
            try:
                result = await self.dispatcher.dispatch(
                    caregiver.caregiver_user_id,
                    config.CAREGIVER_MISSED_TITLE,
                    body,
                    {"type": "caregiver_alert", "patient_id": user.id, "action_required": False},
                )
                if not result.ok:
                    logger.warning(f"Caregiver alert to {caregiver.caregiver_user_id} failed: {result.error}")
            except Exception as e:
                logger.error(f"Failed to notify caregiver {caregiver.caregiver_user_id}: {e}")

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def _target_occurrence(
        self, user_id: int, medication_id: int, scheduled_time: Optional[datetime]
    ) -> Optional[datetime]:
        if scheduled_time is not None:
            return ensure_utc(scheduled_time)
        live = self.registry.latest_awaiting_ack(user_id, medication_id)
        if live is not None:
            return live.scheduled_time
        schedules = await self.store.list_active_schedules(user_id, medication_id)
        return current_occurrence(schedules, self.clock())

    async def _resolve(
        self, user_id: int, medication_id: int, scheduled_time: datetime, status: str, replace: Tuple[str, ...]
    ) -> bool:
        now = self.clock()
        written = await self._persist(
            f"mark dose {status}",
            lambda: self.store.upsert_dose(
                user_id,
                medication_id,
                scheduled_time,
                status,
                taken_at=now if status == "taken" else None,
                replace_statuses=replace,
            ),
        )
        occ = self.registry.get_or_create(user_id, medication_id, scheduled_time)
        await self._cancel_all(occ)
        if written:
            occ.state = DoseState(status)
        return written

    async def mark_taken(
        self, user_id: int, medication_id: int, scheduled_time: Optional[datetime] = None
    ) -> ActionResult:
        """Confirm a dose; also repairs a dose already marked missed or skipped"""
        target = await self._target_occurrence(user_id, medication_id, scheduled_time)
        if target is None:
            return False, config.ERROR_MESSAGES["no_dose"]

        try:
            written = await self._resolve(user_id, medication_id, target, "taken", ("scheduled", "missed", "skipped"))
        except PersistenceError:
            return False, config.ERROR_MESSAGES["database_error"]

        if not written:
            self.registry.get_or_create(user_id, medication_id, target).state = DoseState.TAKEN
            return True, "Dose was already marked as taken"
        logger.info(f"User {user_id} took medication {medication_id} ({target.isoformat()})")
        return True, "Dose marked as taken"

    async def skip(self, user_id: int, medication_id: int, scheduled_time: Optional[datetime] = None) -> ActionResult:
        target = await self._target_occurrence(user_id, medication_id, scheduled_time)
        if target is None:
            return False, config.ERROR_MESSAGES["no_dose"]

        try:
            written = await self._resolve(user_id, medication_id, target, "skipped", ("scheduled", "missed"))
        except PersistenceError:
            return False, config.ERROR_MESSAGES["database_error"]

        if not written:
            return False, "Dose was already recorded"
        logger.info(f"User {user_id} skipped medication {medication_id} ({target.isoformat()})")
        return True, "Dose skipped"

    async def snooze(
        self,
        user_id: int,
        medication_id: int,
        minutes: Optional[int] = None,
        scheduled_time: Optional[datetime] = None,
    ) -> ActionResult:
        if minutes is None:
            minutes = config.REMINDER_SNOOZE_MINUTES
        if not 1 <= minutes <= config.MAX_SNOOZE_MINUTES:
            return False, config.ERROR_MESSAGES["invalid_snooze"].format(max=config.MAX_SNOOZE_MINUTES)

        if scheduled_time is not None:
            occ = self.registry.get(medication_id, scheduled_time)
        else:
            occ = self.registry.latest_awaiting_ack(user_id, medication_id)
        if occ is None or occ.state not in AWAITING_ACK_STATES:
            return False, config.ERROR_MESSAGES["no_active_reminder"]

        if occ.snooze_count >= config.MAX_SNOOZES:
            logger.info(f"Snooze limit reached for {occ.key}")
            return False, config.ERROR_MESSAGES["snooze_limit"]

        await self._cancel_all(occ)
        occ.snooze_count += 1
        occ.state = DoseState.SNOOZED
        refire_at = self.clock() + timedelta(minutes=minutes)
        self._arm(occ, refire_at, self._on_refire_timer)
        await self._register_delivery(occ, refire_at)

        logger.info(f"Snoozed {occ.key} for {minutes} minutes ({occ.snooze_count}/{config.MAX_SNOOZES})")
        return True, f"Snoozed for {minutes} minutes"

    async def handle_action(self, event: DoseActionEvent) -> ActionResult:
        """Apply one user action and return (ok, message)"""
        action = DoseActionType(event.type)
        if action == DoseActionType.TAKEN:
            return await self.mark_taken(event.user_id, event.medication_id, event.scheduled_time)
        if action == DoseActionType.SKIP:
            return await self.skip(event.user_id, event.medication_id, event.scheduled_time)
        if action == DoseActionType.SNOOZE:
            return await self.snooze(event.user_id, event.medication_id, event.minutes, event.scheduled_time)
        timing = await self.get_next_dose_info(event.user_id, event.medication_id)
        tz = await self._display_timezone(event.user_id, event.medication_id)
        return True, describe_timing(timing, self.clock(), tz)

    def _ensure_consumer(self):
        if self._actions is None:
            self._actions = asyncio.Queue()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume_actions())

    def submit_action(self, event: DoseActionEvent) -> "asyncio.Future[ActionResult]":
        """Queue an action for the consumer task; the future resolves to (ok, message)"""
        self._ensure_consumer()
        future = asyncio.get_running_loop().create_future()
        self._actions.put_nowait((event, future))
        return future

    async def _consume_actions(self):
        # Actions are applied one at a time
        while True:
            event, future = await self._actions.get()
            try:
                result = await self.handle_action(event)
                logger.debug(f"Action {event.type} for medication {event.medication_id}: {result}")
                if not future.done():
                    future.set_result(result)
            except Exception as e:
                logger.error(f"Error handling dose action {event}: {e}")
                if not future.done():
                    future.set_exception(e)
            finally:
                self._actions.task_done()

    # ------------------------------------------------------------------
    # Reconciliation and periodic pass
    # ------------------------------------------------------------------

    def _is_live(self, occ: Occurrence) -> bool:
        # A non-terminal occurrence whose timer was dropped (misfire) is not live
        return occ.is_live and bool(occ.job_id) and self.scheduler.get_job(occ.job_id) is not None

    def _has_live_state(self, medication_id: int, scheduled_time: datetime) -> bool:
        occ = self.registry.get(medication_id, scheduled_time)
        return occ is not None and self._is_live(occ)

    async def _reconcile_missed(self, user_id: int, medication_id: int, scheduled_time: datetime) -> bool:
        try:
            written = await self._persist(
                "reconcile missed dose",
                lambda: self.store.upsert_dose(
                    user_id,
                    medication_id,
                    scheduled_time,
                    "missed",
                    notes=config.RECONCILED_MISSED_NOTE,
                    replace_statuses=("scheduled",),
                ),
            )
        except PersistenceError:
            return False
        if not written:
            return False

        occ = self.registry.get(medication_id, scheduled_time)
        if occ is not None:
            occ.state = DoseState.MISSED
        logger.info(f"Reconciled {occurrence_key(medication_id, scheduled_time)} as missed")
        await self._emit(DoseEvent("dose_missed", user_id, medication_id, scheduled_time))
        await self._notify_missed(user_id, medication_id, scheduled_time, notify_user=False)
        return True

    async def reconcile(self) -> int:
        """Mark missed every occurrence whose grace window elapsed unanswered"""
        now = self.clock()
        cutoff = now - GRACE_PERIOD
        count = 0

        # Rows left 'scheduled' (e.g. process suspended during the grace window)
        for dose in await self.store.get_unresolved_doses(cutoff):
            at = ensure_utc(dose.scheduled_time)
            if self._has_live_state(dose.medication_id, at):
                continue
            if await self._taken_nearby(dose.user_id, dose.medication_id, at):
                continue
            if await self._reconcile_missed(dose.user_id, dose.medication_id, at):
                count += 1

        # Occurrences that never got a row at all
        lookback_start = now - timedelta(hours=config.RECONCILE_LOOKBACK_HOURS)
        for schedule in await self.store.get_all_active_schedules():
            created_at = getattr(schedule, "created_at", None)
            start = max(ensure_utc(created_at), lookback_start) if created_at else lookback_start
            due = occurrences_between(schedule, start, cutoff)
            if not due:
                continue
            doses = await self.store.query_doses(
                schedule.user_id, schedule.medication_id, start - TAKEN_MATCH_WINDOW, cutoff + TAKEN_MATCH_WINDOW
            )
            recorded = {ensure_utc(d.scheduled_time) for d in doses}
            confirmed = [ensure_utc(d.scheduled_time) for d in doses if d.status in CONFIRMED_STATUSES]
            for at in due:
                if at in recorded or self._has_live_state(schedule.medication_id, at) or was_confirmed(at, confirmed):
                    continue
                if await self._reconcile_missed(schedule.user_id, schedule.medication_id, at):
                    count += 1

        if count:
            logger.info(f"Reconciliation marked {count} doses missed")
        return count

    async def periodic_pass(self):
        """Reconcile, catch up due occurrences and re-arm fire timers"""
        try:
            now = self.clock()
            await self.reconcile()

            groups: Dict[Tuple[int, int], List] = defaultdict(list)
            for schedule in await self.store.get_all_active_schedules():
                groups[(schedule.user_id, schedule.medication_id)].append(schedule)

            for (user_id, medication_id), schedules in groups.items():
                try:
                    confirmed = await self._confirmed_times(user_id, medication_id, now - timedelta(days=1), now)
                    timing = resolve_dose_timing(schedules, now, confirmed)
                    logger.debug(f"Medication {medication_id}: {timing.to_dict()}")

                    if timing.is_due:
                        occ = self.registry.get(medication_id, timing.current_reminder_time)
                        if occ is None or (occ.state == DoseState.IDLE and not self.scheduler.get_job(occ.key)):
                            await self.fire(user_id, medication_id, timing.current_reminder_time, schedules=schedules)

                    await self.arm_next_fire(user_id, medication_id, schedules)
                except Exception as inner_exc:
                    logger.warning(f"Periodic pass failed for medication {medication_id}: {inner_exc}")

            pruned = self.registry.prune(now - REGISTRY_RETENTION, is_live=self._is_live)
            if pruned:
                logger.debug(f"Pruned {pruned} finished occurrences")
        except Exception as exc:
            logger.error(f"Error in periodic pass: {exc}")

    async def cancel_medication(self, medication_id: int):
        """Drop all pending timers for a medication"""
        for occ in self.registry.for_medication(medication_id):
            if occ.is_live:
                await self._cancel_all(occ)
                self.registry.remove(occ)
                logger.info(f"Cancelled job: {occ.key}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_next_dose_info(self, user_id: int, medication_id: int) -> DoseTiming:
        schedules = await self.store.list_active_schedules(user_id, medication_id)
        if not schedules:
            return NOT_SCHEDULED
        now = self.clock()
        confirmed = await self._confirmed_times(user_id, medication_id, now - timedelta(days=1), now)
        return resolve_dose_timing(schedules, now, confirmed)

    async def _display_timezone(self, user_id: int, medication_id: int):
        """The medication's schedule timezone, else the user's"""
        schedules = await self.store.list_active_schedules(user_id, medication_id)
        if schedules:
            return schedule_timezone(schedules[0])
        user = await self.store.get_user_by_id(user_id)
        return get_timezone(getattr(user, "timezone", None))

    async def get_adherence_stats(self, user_id: int, medication_id: int, days: Optional[int] = None) -> AdherenceStats:
        if days is None:
            days = config.ADHERENCE_WINDOW_DAYS
        now = self.clock()
        doses = await self.store.query_doses(user_id, medication_id, now - timedelta(days=days), now)
        tz = await self._display_timezone(user_id, medication_id)
        return compute_adherence_stats(doses, tz=tz, now=now)

    # ------------------------------------------------------------------
    # Digest
    # ------------------------------------------------------------------

    async def send_missed_digest(self) -> int:
        """Send each active user a summary of doses missed in the last 24 hours"""
        if self.dispatcher is None:
            return 0
        sent = 0
        now = self.clock()
        try:
            users = await self.store.get_all_active_users()
        except Exception as e:
            logger.error(f"Failed to load users for missed digest: {e}")
            return 0

        for user in users:
            try:
                missed = await self.store.get_doses_between(user.id, now - timedelta(hours=24), now, status="missed")
                if not missed:
                    continue
                counts: Dict[int, int] = defaultdict(int)
                for dose in missed:
                    counts[dose.medication_id] += 1
                lines = []
                for medication_id, n in counts.items():
                    medication = await self.store.get_medication_by_id(medication_id)
                    name = getattr(medication, "name", None) or f"Medication {medication_id}"
                    lines.append(f"{name}: {n} missed")
                body = f"You missed {len(missed)} dose(s) in the last 24 hours.\n" + "\n".join(lines)
                result = await self.dispatcher.dispatch(
                    user.id, config.DIGEST_TITLE, body, {"type": "digest", "action_required": False}
                )
                if result.ok:
                    sent += 1
            except Exception as inner_exc:
                logger.warning(f"Missed digest failed for user {user.id}: {inner_exc}")

        logger.info(f"Sent missed dose digest to {sent} users")
        return sent
