import json
from datetime import date, datetime, timedelta

import pandas as pd
import pytest

from attendance_store import (
    RECORDS_KEY,
    AttendanceStore,
    JsonFileStore,
    MemoryStore,
    ensure_roster,
    load_roster_file,
)
from errors import StoreAccessError
from schemas import SAMPLE_STUDENTS, AttendanceRecord, Student

DAY = datetime(2026, 10, 18, 10, 0)


@pytest.fixture
def store(tmp_path):
    return AttendanceStore(JsonFileStore(tmp_path / "store.json"))


def test_records_round_trip(store):
    records = [AttendanceRecord.for_day(DAY, "101", True),
               AttendanceRecord.for_day(DAY, "102", False)]
    store.set_records(records)
    assert store.get_records() == records


def test_empty_store_reads_empty(store):
    assert store.get_records() == []
    assert store.get_students() == []


def test_corrupt_records_raise_instead_of_returning_empty():
    kv = MemoryStore()
    kv.set(RECORDS_KEY, json.dumps([{"id": "nope"}]))
    with pytest.raises(StoreAccessError):
        AttendanceStore(kv).get_records()


def test_unreadable_file_raises(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreAccessError):
        JsonFileStore(path).get(RECORDS_KEY)


def test_date_queries(store):
    yesterday = DAY - timedelta(days=1)
    store.set_records([
        AttendanceRecord.for_day(DAY, "101", True),
        AttendanceRecord.for_day(yesterday, "101", False),
        AttendanceRecord.for_day(DAY - timedelta(days=5), "101", True),
    ])
    assert len(store.get_attendance_for_date(date(2026, 10, 18))) == 1
    assert store.has_records_for(yesterday)
    assert not store.has_records_for(DAY - timedelta(days=2))
    assert store.dates_with_records(yesterday, DAY) == [yesterday.date(), DAY.date()]
    assert len(store.records_in_range(DAY - timedelta(days=7), DAY)) == 3


def test_clear_records(store):
    store.set_records([AttendanceRecord.for_day(DAY, "101", True)])
    store.clear_records()
    assert store.get_records() == []


def test_file_store_keeps_other_keys(tmp_path):
    kv = JsonFileStore(tmp_path / "nested" / "store.json")
    kv.set("a", "1")
    kv.set("b", "2")
    kv.remove("a")
    assert kv.get("a") is None
    assert kv.get("b") == "2"


def test_load_roster_from_csv(tmp_path):
    path = tmp_path / "students.csv"
    pd.DataFrame({"Student Name": ["Alice", "Bob", "Bob again"],
                  "Roll No": ["001", "002", "002"]}).to_csv(path, index=False)
    roster = load_roster_file(path)
    assert roster == [Student(name="Alice", roll_number="001"),
                      Student(name="Bob", roll_number="002")]


def test_load_roster_from_json(tmp_path):
    path = tmp_path / "students.json"
    path.write_text(json.dumps([{"name": "Alice", "roll_number": "1"}]), encoding="utf-8")
    assert load_roster_file(path) == [Student(name="Alice", roll_number="1")]


def test_load_roster_needs_columns(tmp_path):
    path = tmp_path / "students.csv"
    pd.DataFrame({"Who": ["Alice"]}).to_csv(path, index=False)
    with pytest.raises(ValueError):
        load_roster_file(path)


def test_ensure_roster_seeds_sample_once(store):
    assert ensure_roster(store) == SAMPLE_STUDENTS
    store.save_students([Student(name="Alice", roll_number="1")])
    assert ensure_roster(store) == [Student(name="Alice", roll_number="1")]


def test_ensure_roster_prefers_file(store, tmp_path):
    path = tmp_path / "students.json"
    path.write_text(json.dumps([{"name": "Zoe", "roll_number": "9"}]), encoding="utf-8")
    store.save_students(SAMPLE_STUDENTS)
    assert ensure_roster(store, path) == [Student(name="Zoe", roll_number="9")]
    assert store.get_students() == [Student(name="Zoe", roll_number="9")]


def test_stores_on_one_file_share_a_lock(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    here = JsonFileStore("store.json")
    assert here.lock is JsonFileStore(tmp_path / "store.json").lock
    assert AttendanceStore(here).lock is here.lock
    assert here.lock is not JsonFileStore(tmp_path / "other.json").lock
