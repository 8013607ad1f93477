import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from gemini_service import DEFAULT_MODEL
from reconciler import RETENTION_DAYS

TRUTHY = {"1", "true", "yes", "y", "on"}


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY


@dataclass(frozen=True)
class Settings:
    store_path: Path = Path("attendance_store.json")
    roster_path: Optional[Path] = None
    env_file: Path = Path(".env")
    auto_fallback: bool = False
    fallback_scope: str = "absent"
    gemini_model: str = DEFAULT_MODEL
    retention_days: int = RETENTION_DAYS

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        load_dotenv(env_file)
        roster = os.getenv("ATTENDANCE_ROSTER_PATH", "").strip()
        scope = os.getenv("ATTENDANCE_FALLBACK_SCOPE", "absent").strip().lower()
        if scope not in ("absent", "roster"):
            raise ValueError(f"ATTENDANCE_FALLBACK_SCOPE must be 'absent' or 'roster', got {scope!r}")
        return cls(
            store_path=Path(os.getenv("ATTENDANCE_STORE_PATH", "attendance_store.json")),
            roster_path=Path(roster) if roster else None,
            env_file=Path(env_file),
            auto_fallback=_env_bool("ATTENDANCE_AUTO_FALLBACK"),
            fallback_scope=scope,
            gemini_model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL).strip() or DEFAULT_MODEL,
            retention_days=int(os.getenv("ATTENDANCE_RETENTION_DAYS", str(RETENTION_DAYS))),
        )
