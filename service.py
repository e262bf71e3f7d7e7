"""
Per-user facade over the dose scheduler and the adherence log
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from adherence import AdherenceStats, summarize_day
from scheduler import ActionResult, DoseEvent, DoseScheduler
from timing import DoseTiming, start_of_local_day
from utils.time import ensure_aware, ensure_utc, get_user_timezone_name

logger = logging.getLogger(__name__)


class MedicationReminderService:
    """Reminder operations scoped to one user"""

    def __init__(self, user_id: int, dose_scheduler: DoseScheduler):
        self.user_id = user_id
        self.dose_scheduler = dose_scheduler

    @property
    def store(self):
        return self.dose_scheduler.store

    async def get_next_dose_info(self, medication_id: int) -> DoseTiming:
        """Next dose time plus whether a dose is due or overdue right now"""
        return await self.dose_scheduler.get_next_dose_info(self.user_id, medication_id)

    async def mark_taken(self, medication_id: int, scheduled_time: Optional[datetime] = None) -> ActionResult:
        return await self.dose_scheduler.mark_taken(self.user_id, medication_id, scheduled_time)

    async def snooze(self, medication_id: int, minutes: Optional[int] = None) -> ActionResult:
        return await self.dose_scheduler.snooze(self.user_id, medication_id, minutes)

    async def skip(self, medication_id: int, scheduled_time: Optional[datetime] = None) -> ActionResult:
        return await self.dose_scheduler.skip(self.user_id, medication_id, scheduled_time)

    async def get_adherence_stats(self, medication_id: int, days: int = 30) -> AdherenceStats:
        return await self.dose_scheduler.get_adherence_stats(self.user_id, medication_id, days)

    async def get_adherence_history(self, medication_id: int, days: int = 30) -> List[Any]:
        """Dose rows of the last ``days`` days, newest first"""
        now = self.dose_scheduler.clock()
        doses = await self.store.query_doses(self.user_id, medication_id, now - timedelta(days=days), now)
        return list(reversed(doses))

    async def _local_day(self) -> Tuple[str, datetime, datetime, datetime]:
        user = await self.store.get_user_by_id(self.user_id)
        tz_name = get_user_timezone_name(user)
        now = self.dose_scheduler.clock()
        start = start_of_local_day(now, tz_name)
        end = start_of_local_day(start + timedelta(hours=36), tz_name) - timedelta(microseconds=1)
        return tz_name, now, start, end

    async def get_todays_status(self) -> Dict[str, int]:
        """Dose counts for the user's current local day"""
        _, _, start, end = await self._local_day()
        doses = await self.store.get_doses_between(self.user_id, start, end)
        return summarize_day(doses)

    async def _dose_entry(self, medication_id: int, scheduled_time: datetime, status: str, tz_name: str, names: Dict):
        if medication_id not in names:
            medication = await self.store.get_medication_by_id(medication_id)
            names[medication_id] = getattr(medication, "name", None) or f"Medication {medication_id}"
        scheduled_time = ensure_utc(scheduled_time)
        return {
            "medication_id": medication_id,
            "medication_name": names[medication_id],
            "scheduled_time": scheduled_time,
            "reminder_time": ensure_aware(scheduled_time, tz_name).strftime("%H:%M"),
            "status": status,
        }

    async def get_todays_missed(self) -> List[Dict[str, Any]]:
        """Doses marked missed during the user's current local day, across medications"""
        tz_name, _, start, end = await self._local_day()
        names: Dict[int, str] = {}
        missed = await self.store.get_doses_between(self.user_id, start, end, status="missed")
        return [await self._dose_entry(d.medication_id, d.scheduled_time, "missed", tz_name, names) for d in missed]

    async def get_overdue_doses(self) -> List[Dict[str, Any]]:
        """Past occurrences still waiting for an answer, across medications

        An occurrence qualifies while it has no dose row or its row is still
        'scheduled'; once the grace timer or reconciliation marks it missed it
        shows up in get_todays_missed instead.
        """
        user = await self.store.get_user_by_id(self.user_id)
        tz_name = get_user_timezone_name(user)
        medication_ids = sorted(
            {s.medication_id for s in await self.store.get_all_active_schedules() if s.user_id == self.user_id}
        )

        now = ensure_utc(self.dose_scheduler.clock())
        names: Dict[int, str] = {}
        overdue = []
        for medication_id in medication_ids:
            timing = await self.get_next_dose_info(medication_id)
            scheduled_time = timing.current_reminder_time
            if scheduled_time is None or not (timing.is_due or timing.is_overdue) or scheduled_time > now:
                continue
            dose = await self.store.get_dose(self.user_id, medication_id, scheduled_time)
            if dose is not None and dose.status != "scheduled":
                continue
            entry = await self._dose_entry(medication_id, scheduled_time, "scheduled", tz_name, names)
            entry["overdue_minutes"] = int((now - scheduled_time).total_seconds() // 60)
            overdue.append(entry)

        overdue.sort(key=lambda e: e["scheduled_time"])
        return overdue

    async def mark_all_taken(self) -> ActionResult:
        """Confirm every dose of today that is still pending, plus any overdue one"""
        _, now, start, _ = await self._local_day()
        pending = await self.store.get_doses_between(self.user_id, start, now, status="scheduled")
        targets = {(d.medication_id, ensure_utc(d.scheduled_time)) for d in pending}
        targets.update((e["medication_id"], e["scheduled_time"]) for e in await self.get_overdue_doses())

        marked = 0
        for medication_id, scheduled_time in sorted(targets, key=lambda t: (t[1], t[0])):
            ok, message = await self.mark_taken(medication_id, scheduled_time)
            if ok:
                marked += 1
            else:
                logger.warning(f"Could not mark medication {medication_id} taken: {message}")

        if not marked:
            return False, "No pending doses to mark"
        logger.info(f"User {self.user_id} marked {marked} doses taken at once")
        return True, f"Marked {marked} dose{'s' if marked != 1 else ''} as taken"

    def _subscribe_own(self, event_type: str, callback: Callable[[DoseEvent], Any]) -> Callable[[], None]:
        user_id = self.user_id

        async def forward(event: DoseEvent):
            if event.user_id != user_id:
                return
            result = callback(event)
            if hasattr(result, "__await__"):
                await result

        return self.dose_scheduler.subscribe(event_type, forward)

    def on_dose_due(self, callback: Callable[[DoseEvent], Any]) -> Callable[[], None]:
        return self._subscribe_own("dose_due", callback)

    def on_dose_missed(self, callback: Callable[[DoseEvent], Any]) -> Callable[[], None]:
        return self._subscribe_own("dose_missed", callback)
