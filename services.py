"""
Wiring for one attendance session: stores, roster, recognisers, reconciler.

Everything is built here and passed in explicitly; no module keeps a
shared instance of its own.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from attendance_store import AttendanceStore, JsonFileStore, ensure_roster
from gemini_service import GeminiNameService
from ocr_module import recognize_text
from reconciler import AttendanceReconciler
from recognition import RecognitionCoordinator
from schemas import AttendanceRecord, PresenceDecision, Student
from secret_store import EnvSecretStore
from settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class AttendanceSession:
    settings: Settings
    store: AttendanceStore
    roster: List[Student]
    secrets: object
    fallback: GeminiNameService
    reconciler: AttendanceReconciler
    recognizer: Callable[[bytes], List[str]] = recognize_text

    @classmethod
    def from_settings(cls, settings: Settings, secrets=None, kv=None,
                      recognizer: Callable[[bytes], List[str]] = recognize_text) -> "AttendanceSession":
        store = AttendanceStore(kv if kv is not None else JsonFileStore(settings.store_path))
        roster = ensure_roster(store, settings.roster_path)
        secrets = secrets if secrets is not None else EnvSecretStore(str(settings.env_file))
        return cls(
            settings=settings,
            store=store,
            roster=roster,
            secrets=secrets,
            fallback=GeminiNameService(secrets, model_name=settings.gemini_model),
            reconciler=AttendanceReconciler(store, retention_days=settings.retention_days),
            recognizer=recognizer,
        )

    def new_coordinator(self, auto_fallback: Optional[bool] = None) -> RecognitionCoordinator:
        return RecognitionCoordinator(
            self.roster,
            self.recognizer,
            fallback=self.fallback,
            auto_fallback=self.settings.auto_fallback if auto_fallback is None else auto_fallback,
            fallback_scope=self.settings.fallback_scope,
        )

    def existing_for(self, when: datetime) -> List[AttendanceRecord]:
        return self.store.get_attendance_for_date(when)

    def save(self, when: datetime, decision: PresenceDecision) -> Tuple[List[AttendanceRecord], bool]:
        """Persist a decision; the flag tells whether the day already had records."""
        updating = self.store.has_records_for(when)
        saved = self.reconciler.save(when, decision)
        logger.info("%s %d records for %s", "Updated" if updating else "Created",
                    len(saved), when.date())
        return saved, updating
