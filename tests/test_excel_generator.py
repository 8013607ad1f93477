import io
from datetime import date, datetime

import openpyxl

from excel_generator import REPORT_COLUMNS, generate_excel, history_frame, student_report
from schemas import AttendanceRecord, Student

ROSTER = [Student(name="Alice", roll_number="1"), Student(name="Bob", roll_number="2")]
DAY1 = datetime(2026, 10, 16, 9)
DAY2 = datetime(2026, 10, 17, 9)
RECORDS = [
    AttendanceRecord.for_day(DAY1, "1", True),
    AttendanceRecord.for_day(DAY1, "2", False),
    AttendanceRecord.for_day(DAY2, "1", True),
]


def test_history_grid():
    df = history_frame(RECORDS, ROSTER)
    assert list(df.columns) == ["Name", "Roll Number", "2026-10-16", "2026-10-17"]
    assert df.iloc[0].tolist() == ["Alice", "1", "Present", "Present"]
    # no record for Bob on the 17th reads as absent
    assert df.iloc[1].tolist() == ["Bob", "2", "Absent", "Absent"]


def test_history_range():
    df = history_frame(RECORDS, ROSTER, start=date(2026, 10, 17))
    assert list(df.columns) == ["Name", "Roll Number", "2026-10-17"]


def test_student_report():
    df = student_report(RECORDS, ROSTER)
    assert list(df.columns) == REPORT_COLUMNS
    assert df.iloc[0].tolist() == ["Alice", "1", 2, 0, 2, 100]
    assert df.iloc[1].tolist() == ["Bob", "2", 0, 1, 1, 0]


def test_empty_report():
    df = student_report([], ROSTER)
    assert df["Total Days"].tolist() == [0, 0]
    assert df["Attendance Rate (%)"].tolist() == [0, 0]


def test_workbook_layout():
    wb = openpyxl.load_workbook(io.BytesIO(generate_excel(RECORDS, ROSTER)))
    assert wb.sheetnames == ["Attendance", "Summary"]

    grid = wb["Attendance"]
    assert grid["A1"].value == "Name"
    assert grid["C2"].value == "Present"

    summary = wb["Summary"]
    assert summary["B2"].value == "2026-10-16 to 2026-10-17"
    assert [c.value for c in summary[4]] == REPORT_COLUMNS
    assert summary["F5"].value == 100
