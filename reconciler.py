"""
reconciler.py
=============
Folds a finished presence decision into the stored attendance history.

  • exactly one record per (roll number, calendar day); rewrites replace
  • other days pass through untouched
  • history older than the rolling window is dropped after each merge
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional, Union

from schemas import AttendanceRecord, PresenceDecision, start_of_day

logger = logging.getLogger(__name__)

RETENTION_DAYS = 30


def retention_cutoff(today: Union[date, datetime], retention_days: int = RETENTION_DAYS) -> date:
    return start_of_day(today).date() - timedelta(days=retention_days)


def merge(when: datetime, decision: PresenceDecision, existing: Iterable[AttendanceRecord],
          today: Optional[Union[date, datetime]] = None,
          retention_days: int = RETENTION_DAYS) -> List[AttendanceRecord]:
    """
    Return the new record collection. Pure: `existing` is not modified.

    Every existing record for a (student, day) pair being written is removed,
    including physical duplicates, before the fresh record is appended.
    """
    day = start_of_day(when).date()
    new_records = [AttendanceRecord.for_day(when, roll, present)
                   for roll, present in decision.items()]
    written = {r.student_roll_number for r in new_records}

    kept = [r for r in existing
            if not (r.day == day and r.student_roll_number in written)]
    merged = kept + new_records

    cutoff = retention_cutoff(today if today is not None else datetime.now(), retention_days)
    retained = [r for r in merged if r.day >= cutoff]

    logger.info(
        "Merge for %s: wrote %d, kept %d, dropped %d older than %s",
        day, len(new_records), len(kept), len(merged) - len(retained), cutoff,
    )
    return retained


class AttendanceReconciler:
    """
    Serialises read-modify-write of the whole record collection.

    The lock comes from the store, so reconcilers of different sessions
    writing the same file wait for each other.
    """

    def __init__(self, store, retention_days: int = RETENTION_DAYS,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.retention_days = retention_days
        self.clock = clock

    def save(self, when: datetime, decision: PresenceDecision) -> List[AttendanceRecord]:
        with self.store.lock:
            existing = self.store.get_records()
            updated = merge(when, decision, existing,
                            today=self.clock(), retention_days=self.retention_days)
            self.store.set_records(updated)
        logger.info("Saved attendance for %s (%d present / %d total)",
                    start_of_day(when).date(), sum(decision.values()), len(decision))
        return [r for r in updated if r.day == start_of_day(when).date()]
