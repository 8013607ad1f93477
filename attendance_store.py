"""
attendance_store.py
===================
Durable storage for the roster and attendance records.

The substrate is a key -> encoded blob map (a JSON file on disk). Records
are stored as one whole collection under a single key, so callers that
modify them must read-modify-write; AttendanceReconciler does that under
the substrate's lock, which is shared by every store opened on the same
file in this process.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd
from pydantic import ValidationError

from errors import StoreAccessError
from schemas import (
    SAMPLE_STUDENTS,
    AttendanceRecord,
    RecordList,
    Student,
    StudentList,
    start_of_day,
)

logger = logging.getLogger(__name__)

STUDENTS_KEY = "students"
RECORDS_KEY = "attendanceRecords"

DayLike = Union[date, datetime]

# one lock per resolved store path, shared by every JsonFileStore on it
_PATH_LOCKS: Dict[str, threading.RLock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def path_lock(path: Union[str, Path]) -> threading.RLock:
    key = str(Path(path).expanduser().resolve())
    with _PATH_LOCKS_GUARD:
        return _PATH_LOCKS.setdefault(key, threading.RLock())


# ══════════════════════════════════════════════════════════════════════════════
# Key/value substrates
# ══════════════════════════════════════════════════════════════════════════════

class JsonFileStore:
    """Maps keys to string blobs inside a single JSON file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.lock = path_lock(self.path)

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreAccessError(f"{self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreAccessError(f"{self.path}: expected a JSON object")
        return data

    def _write_all(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreAccessError(f"{self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        return self._read_all().get(key)

    def set(self, key: str, blob: str) -> None:
        with self.lock:
            data = self._read_all()
            data[key] = blob
            self._write_all(data)

    def remove(self, key: str) -> None:
        with self.lock:
            data = self._read_all()
            if data.pop(key, None) is not None:
                self._write_all(data)


class MemoryStore:
    def __init__(self):
        self._data: Dict[str, str] = {}
        self.lock = threading.RLock()

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, blob: str) -> None:
        self._data[key] = blob

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


# ══════════════════════════════════════════════════════════════════════════════
# Typed access
# ══════════════════════════════════════════════════════════════════════════════

class AttendanceStore:
    def __init__(self, kv):
        self.kv = kv

    @property
    def lock(self) -> threading.RLock:
        """Serialises read-modify-write of the record collection."""
        return self.kv.lock

    # ── Students ──────────────────────────────────────────────────────────────

    def get_students(self) -> List[Student]:
        blob = self.kv.get(STUDENTS_KEY)
        if not blob:
            return []
        try:
            return StudentList.validate_json(blob)
        except ValidationError as e:
            raise StoreAccessError(f"corrupt roster: {e}") from e

    def save_students(self, students: List[Student]) -> None:
        self.kv.set(STUDENTS_KEY, StudentList.dump_json(students).decode("utf-8"))
        logger.info("Saved roster of %d students", len(students))

    # ── Attendance records ───────────────────────────────────────────────────

    def get_records(self) -> List[AttendanceRecord]:
        blob = self.kv.get(RECORDS_KEY)
        if not blob:
            return []
        try:
            return RecordList.validate_json(blob)
        except ValidationError as e:
            # Refuse to hand back [] here: the next write would wipe history.
            raise StoreAccessError(f"corrupt attendance records: {e}") from e

    def set_records(self, records: List[AttendanceRecord]) -> None:
        self.kv.set(RECORDS_KEY, RecordList.dump_json(records).decode("utf-8"))

    def clear_records(self) -> None:
        self.kv.remove(RECORDS_KEY)
        logger.info("Cleared all attendance records")

    def get_attendance_for_date(self, day: DayLike) -> List[AttendanceRecord]:
        target = start_of_day(day).date()
        found = [r for r in self.get_records() if r.day == target]
        logger.debug("Found %d records for %s", len(found), target)
        return found

    def has_records_for(self, day: DayLike) -> bool:
        return bool(self.get_attendance_for_date(day))

    def records_in_range(self, start: DayLike, end: DayLike) -> List[AttendanceRecord]:
        lo, hi = start_of_day(start).date(), start_of_day(end).date()
        return [r for r in self.get_records() if lo <= r.day <= hi]

    def dates_with_records(self, start: DayLike, end: DayLike) -> List[date]:
        return sorted({r.day for r in self.records_in_range(start, end)})


# ══════════════════════════════════════════════════════════════════════════════
# Roster loading
# ══════════════════════════════════════════════════════════════════════════════

def _clean_cell(value) -> str:
    return str(value).strip()


def load_roster_file(path: Union[str, Path]) -> List[Student]:
    """
    Load students from .xlsx / .xls / .csv (a name column and a roll column)
    or from a JSON list of {"name", "roll_number"} objects.
    """
    path = Path(path)
    ext = path.suffix.lower()
    if ext == ".json":
        try:
            return StudentList.validate_json(path.read_bytes())
        except ValidationError as e:
            raise ValueError(f"{path}: not a student list: {e}") from e

    if ext in {".xlsx", ".xls"}:
        df = pd.read_excel(path, dtype=str)
    elif ext == ".csv":
        df = pd.read_csv(path, dtype=str)
    else:
        raise ValueError(f"Unsupported roster format: {ext}")

    if df.empty:
        return []

    cols = {str(c).lower().strip(): c for c in df.columns}
    roll_col = next((cols[c] for c in cols if "roll" in c), None)
    name_col = next((cols[c] for c in cols if "name" in c), None)
    if roll_col is None or name_col is None:
        raise ValueError(f"{path}: needs a name column and a roll column, got {list(df.columns)}")

    students, seen = [], set()
    for _, row in df.dropna(subset=[roll_col, name_col]).iterrows():
        roll = _clean_cell(row[roll_col]).replace(" ", "")
        name = _clean_cell(row[name_col])
        if not roll or not name or roll in seen:
            continue
        seen.add(roll)
        students.append(Student(name=name, roll_number=roll))

    logger.info("Loaded %d students from %s", len(students), path.name)
    return students


def ensure_roster(store: AttendanceStore, roster_path: Optional[Union[str, Path]] = None) -> List[Student]:
    """A roster file wins, then the stored roster, then the sample roster."""
    if roster_path:
        students = load_roster_file(roster_path)
        store.save_students(students)
        return students

    students = store.get_students()
    if students:
        return students

    logger.info("No roster found, using sample data")
    store.save_students(SAMPLE_STUDENTS)
    return list(SAMPLE_STUDENTS)
