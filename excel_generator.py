import io
from datetime import date
from typing import Iterable, List, Optional, Sequence

import openpyxl
import pandas as pd
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from schemas import AttendanceRecord, Student

# Styles
THIN = Side(border_style="thin", color="000000")
THIN_BORDER = Border(left=THIN, right=THIN, top=THIN, bottom=THIN)
HEADER_FILL = PatternFill(start_color="D9E1F2", end_color="D9E1F2", fill_type="solid")
PRESENT_FILL = PatternFill(start_color="E6F4EA", end_color="E6F4EA", fill_type="solid")
ABSENT_FILL = PatternFill(start_color="FFE0E0", end_color="FFE0E0", fill_type="solid")
BOLD_FONT = Font(bold=True, size=10)
TITLE_FONT = Font(bold=True, size=12)

CENTER = Alignment(horizontal="center", vertical="center", wrap_text=True)
LEFT = Alignment(horizontal="left", vertical="center", wrap_text=True)

REPORT_COLUMNS = ["Name", "Roll Number", "Present Days", "Absent Days",
                  "Total Days", "Attendance Rate (%)"]


def _in_range(records: Iterable[AttendanceRecord], start: Optional[date], end: Optional[date]):
    return [r for r in records
            if (start is None or r.day >= start) and (end is None or r.day <= end)]


def history_frame(records: Iterable[AttendanceRecord], roster: Sequence[Student],
                  start: Optional[date] = None, end: Optional[date] = None) -> pd.DataFrame:
    """Roster × day grid of Present / Absent; a missing record reads as Absent."""
    records = _in_range(records, start, end)
    days = sorted({r.day for r in records})
    status = {(r.student_roll_number, r.day): r.is_present for r in records}

    rows = []
    for s in roster:
        row = {"Name": s.name, "Roll Number": s.roll_number}
        for d in days:
            row[d.isoformat()] = "Present" if status.get((s.roll_number, d)) else "Absent"
        rows.append(row)
    return pd.DataFrame(rows, columns=["Name", "Roll Number"] + [d.isoformat() for d in days])


def student_report(records: Iterable[AttendanceRecord], roster: Sequence[Student],
                   start: Optional[date] = None, end: Optional[date] = None) -> pd.DataFrame:
    """Per-student present / absent day counts over the range."""
    records = _in_range(records, start, end)
    rows = []
    for s in roster:
        mine = {r.day: r.is_present for r in records if r.student_roll_number == s.roll_number}
        total = len(mine)
        present = sum(1 for v in mine.values() if v)
        rate = int(present / total * 100) if total else 0
        rows.append([s.name, s.roll_number, present, total - present, total, rate])
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def _set_cell(ws, row, col, value, font=None, alignment=None, fill=None, border=THIN_BORDER):
    cell = ws.cell(row=row, column=col, value=value)
    if font:
        cell.font = font
    if alignment:
        cell.alignment = alignment
    if fill:
        cell.fill = fill
    if border:
        cell.border = border
    return cell


def _write_frame(ws, df: pd.DataFrame, start_row: int = 1):
    for ci, col in enumerate(df.columns, 1):
        _set_cell(ws, start_row, ci, str(col), BOLD_FONT, CENTER, HEADER_FILL)
        max_len = max([len(str(col))] + [len(str(v)) for v in df[col]])
        ws.column_dimensions[get_column_letter(ci)].width = min(max_len + 4, 36)

    for ri, values in enumerate(df.itertuples(index=False), start_row + 1):
        for ci, val in enumerate(values, 1):
            fill = PRESENT_FILL if val == "Present" else ABSENT_FILL if val == "Absent" else None
            align = LEFT if ci == 1 else CENTER
            _set_cell(ws, ri, ci, val.item() if hasattr(val, "item") else val, None, align, fill)


def generate_excel(records: Iterable[AttendanceRecord], roster: Sequence[Student],
                   start: Optional[date] = None, end: Optional[date] = None) -> bytes:
    """
    Two-sheet workbook:
      Attendance — roster × day grid
      Summary    — per-student totals and attendance rate
    """
    records: List[AttendanceRecord] = list(records)
    wb = openpyxl.Workbook()

    ws = wb.active
    ws.title = "Attendance"
    _write_frame(ws, history_frame(records, roster, start, end))

    ws = wb.create_sheet("Summary")
    days = sorted({r.day for r in _in_range(records, start, end)})
    period = f"{days[0].isoformat()} to {days[-1].isoformat()}" if days else "no records"
    _set_cell(ws, 1, 1, "Student Attendance Report", TITLE_FONT, LEFT, border=None)
    _set_cell(ws, 2, 1, "Period:", BOLD_FONT, LEFT, border=None)
    _set_cell(ws, 2, 2, period, None, LEFT, border=None)
    _write_frame(ws, student_report(records, roster, start, end), start_row=4)

    # Save to bytes
    output = io.BytesIO()
    wb.save(output)
    output.seek(0)
    return output.read()
