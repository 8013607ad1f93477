from datetime import date

import pytest

import attendance_cli
from attendance_store import MemoryStore
from errors import NoTextFound
from schemas import SAMPLE_STUDENTS
from secret_store import MemorySecretStore
from services import AttendanceSession
from settings import Settings


@pytest.fixture
def sheet(tmp_path):
    path = tmp_path / "sheet.jpg"
    path.write_bytes(b"not decoded by the fake recogniser")
    return path


def make_session(tmp_path, lines=None, exc=None):
    def recognizer(image):
        if exc is not None:
            raise exc
        return list(lines)

    settings = Settings(store_path=tmp_path / "store.json")
    return AttendanceSession.from_settings(
        settings, secrets=MemorySecretStore(), kv=MemoryStore(), recognizer=recognizer
    )


def run(argv, session):
    args = attendance_cli.parse_args(argv)
    return attendance_cli.COMMANDS[args.command](args, session)


def test_take_saves_then_updates(tmp_path, sheet, capsys):
    session = make_session(tmp_path, lines=["1. John Doe", "Jane Smith"])
    assert run(["take", str(sheet), "--no-fallback"], session) == 0
    assert "Saved 5 records" in capsys.readouterr().out

    saved = session.store.get_attendance_for_date(date.today())
    assert sorted(r.student_roll_number for r in saved if r.is_present) == ["101", "102"]

    run(["take", str(sheet), "--no-fallback"], session)
    out = capsys.readouterr().out
    assert "already exist" in out and "Updated 5 records" in out
    assert len(session.store.get_records()) == 5


def test_take_dry_run(tmp_path, sheet):
    session = make_session(tmp_path, lines=["John Doe"])
    run(["take", str(sheet), "--dry-run", "--date", "2026-10-01"], session)
    assert session.store.get_records() == []


def test_take_declines_escalation_with_no_fallback(tmp_path, sheet, capsys):
    session = make_session(tmp_path, exc=NoTextFound())
    run(["take", str(sheet), "--no-fallback"], session)
    assert "Local OCR: No text found in image" in capsys.readouterr().out
    assert not any(r.is_present for r in session.store.get_records())


def test_forced_fallback_without_key(tmp_path, sheet, capsys):
    session = make_session(tmp_path, lines=["John Doe"])
    run(["take", str(sheet), "--force-fallback", "--dry-run"], session)
    assert "Gemini API key missing" in capsys.readouterr().out


def test_take_missing_image(tmp_path):
    session = make_session(tmp_path, lines=[])
    with pytest.raises(FileNotFoundError):
        run(["take", str(tmp_path / "nope.jpg")], session)


def test_bad_date(tmp_path, sheet):
    with pytest.raises(SystemExit):
        attendance_cli.parse_args(["take", str(sheet), "--date", "18/10/2026"])


def test_history_and_report(tmp_path, sheet, capsys):
    session = make_session(tmp_path, lines=["Emily Davis"])
    run(["history"], session)
    assert "No attendance recorded" in capsys.readouterr().out

    run(["take", str(sheet), "--no-fallback"], session)
    capsys.readouterr()
    run(["history"], session)
    out = capsys.readouterr().out
    assert "Emily Davis" in out and date.today().isoformat() in out

    out_file = tmp_path / "reports" / "attendance.xlsx"
    run(["report", "--out", str(out_file)], session)
    assert out_file.exists() and out_file.stat().st_size > 0


def test_key_commands(tmp_path, capsys):
    session = make_session(tmp_path, lines=[])
    run(["key", "status"], session)
    assert "not configured" in capsys.readouterr().out

    run(["key", "set", "AIza-test"], session)
    assert session.secrets.get_credential() == "AIza-test"

    run(["key", "delete"], session)
    assert session.secrets.get_credential() == ""

    with pytest.raises(ValueError):
        run(["key", "set"], session)


def test_session_seeds_sample_roster(tmp_path):
    assert make_session(tmp_path, lines=[]).roster == list(SAMPLE_STUDENTS)


def test_main_reports_errors_without_traceback(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ATTENDANCE_STORE_PATH", str(tmp_path / "store.json"))
    monkeypatch.delenv("ATTENDANCE_ROSTER_PATH", raising=False)
    env_file = str(tmp_path / ".env")

    with pytest.raises(SystemExit) as exc:
        attendance_cli.main(["--env-file", env_file, "take", "missing.jpg"])
    assert str(exc.value).startswith("Error: Sign-in sheet file not found")

    with pytest.raises(SystemExit) as exc:
        attendance_cli.main(["--env-file", env_file, "--roster", "class.csv", "history"])
    assert "Roster file not found" in str(exc.value)
