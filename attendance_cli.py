import argparse
import logging
import sys
from dataclasses import replace
from datetime import date, datetime, timedelta
from pathlib import Path

from errors import AttendanceError, CredentialMissing
from excel_generator import generate_excel, history_frame, student_report
from ocr_module import load_image_bytes
from recognition import Phase
from services import AttendanceSession
from settings import Settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def parse_day(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Classroom attendance from a photographed sign-in sheet"
    )
    parser.add_argument("--env-file", default=".env")
    parser.add_argument("--roster", help="students file (.xlsx/.csv/.json); overrides ATTENDANCE_ROSTER_PATH")
    sub = parser.add_subparsers(dest="command", required=True)

    take = sub.add_parser("take", help="read a sign-in sheet and save attendance")
    take.add_argument("image")
    take.add_argument("--date", type=parse_day, default=None, help="YYYY-MM-DD, default today")
    escalation = take.add_mutually_exclusive_group()
    escalation.add_argument("--auto-fallback", action="store_true", help="run Gemini whenever OCR looks weak")
    escalation.add_argument("--no-fallback", action="store_true", help="never run Gemini")
    take.add_argument("--force-fallback", action="store_true", help="always run Gemini after the local pass")
    take.add_argument("--dry-run", action="store_true", help="print the decision without saving")

    history = sub.add_parser("history", help="show stored attendance")
    history.add_argument("--from", dest="start", type=parse_day, default=None)
    history.add_argument("--to", dest="end", type=parse_day, default=None)

    report = sub.add_parser("report", help="write an Excel attendance report")
    report.add_argument("--out", default="attendance_report.xlsx")
    report.add_argument("--from", dest="start", type=parse_day, default=None)
    report.add_argument("--to", dest="end", type=parse_day, default=None)

    key = sub.add_parser("key", help="manage the Gemini API key")
    key.add_argument("action", choices=["set", "delete", "status"])
    key.add_argument("value", nargs="?")

    return parser.parse_args(argv)


def resolve_existing_path(path_value: str, label: str) -> Path:
    path = Path(path_value).expanduser()
    if path.exists():
        return path.resolve()
    cwd = Path.cwd().resolve()
    raise FileNotFoundError(
        f"{label} file not found: '{path_value}'. Checked from working directory: '{cwd}'. "
        "Use an absolute path or run command from the file directory."
    )


def resolve_output_path(path_value: str) -> Path:
    out_path = Path(path_value).expanduser()
    if out_path.parent and not out_path.parent.exists():
        out_path.parent.mkdir(parents=True, exist_ok=True)
    return out_path.resolve()


def _ask(prompt: str) -> bool:
    try:
        return input(prompt).strip().lower() in {"y", "yes"}
    except EOFError:
        return False


def cmd_take(args, session: AttendanceSession) -> int:
    image_path = resolve_existing_path(args.image, "Sign-in sheet")
    day = args.date or date.today()
    when = datetime.combine(day, datetime.now().time())

    auto = False if args.no_fallback else (True if args.auto_fallback else None)
    coordinator = session.new_coordinator(auto_fallback=auto)
    existing = session.existing_for(when)
    if existing:
        print(f"Records already exist for {day}; they will be updated.")

    result = coordinator.process_image(load_image_bytes(str(image_path)))
    snap = result.snapshot
    if snap.local_error is not None:
        print(f"Local OCR: {snap.local_error}")

    if snap.phase is Phase.ESCALATION_OFFERED:
        if args.no_fallback or not _ask("Local OCR looks unreliable. Try Gemini? [y/N] "):
            snap = coordinator.decline_escalation()
        else:
            snap = coordinator.accept_escalation().snapshot
    elif args.force_fallback and not args.no_fallback and not snap.fallback_used:
        snap = coordinator.request_fallback().snapshot

    if isinstance(snap.error, CredentialMissing):
        print("Gemini API key missing. Set it with: attendance_cli.py key set <KEY>")
    elif snap.error is not None:
        print(f"Gemini: {snap.error}")

    decision, mismatch = coordinator.final_decision()
    for s in session.roster:
        print(f"  {'P' if decision[s.roll_number] else 'A'}  {s.roll_number:<12} {s.name}")
    print(f"Present {snap.present_count}/{len(decision)}  (names read: {snap.detected_count})")
    if mismatch:
        print("Warning: names read and students marked present differ; review before saving.")

    if args.dry_run:
        return 0
    saved, updated = session.save(when, decision)
    print(f"{'Updated' if updated else 'Saved'} {len(saved)} records for {day}")
    return 0


def cmd_history(args, session: AttendanceSession) -> int:
    end = args.end or date.today()
    start = args.start or end - timedelta(days=session.settings.retention_days)
    df = history_frame(session.store.records_in_range(start, end), session.roster)
    if df.shape[1] <= 2:
        print(f"No attendance recorded between {start} and {end}")
        return 0
    print(df.to_string(index=False))
    return 0


def cmd_report(args, session: AttendanceSession) -> int:
    out = resolve_output_path(args.out)
    records = session.store.get_records()
    out.write_bytes(generate_excel(records, session.roster, args.start, args.end))
    print(student_report(records, session.roster, args.start, args.end).to_string(index=False))
    print(f"Saved report to {out}")
    return 0


def cmd_key(args, session: AttendanceSession) -> int:
    if args.action == "set":
        if not args.value:
            raise ValueError("key set needs a value")
        session.secrets.set_credential(args.value)
        print("Gemini API key stored.")
    elif args.action == "delete":
        session.secrets.delete_credential()
        print("Gemini API key removed.")
    else:
        print("Gemini API key is " + ("configured." if session.secrets.get_credential() else "not configured."))
    return 0


COMMANDS = {"take": cmd_take, "history": cmd_history, "report": cmd_report, "key": cmd_key}


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        settings = Settings.from_env(args.env_file)
        if args.roster:
            settings = replace(settings, roster_path=resolve_existing_path(args.roster, "Roster"))
        session = AttendanceSession.from_settings(settings)
        return COMMANDS[args.command](args, session)
    except (AttendanceError, FileNotFoundError, ValueError) as exc:
        raise SystemExit(f"Error: {exc}") from exc


if __name__ == "__main__":
    sys.exit(main())
