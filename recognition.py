"""
recognition.py
==============
Turns one sign-in sheet photo into a presence decision for the whole roster.

Phases of an attempt:

    IDLE → PROCESSING_LOCAL → DECIDED
                            ↘ ESCALATION_OFFERED → PROCESSING_FALLBACK → DECIDED

The local pass runs PaddleOCR and fuzzy-matches each line against the roster.
If it looks weak (no matches, or most matches shaky) the Gemini fallback is
either run straight away (auto_fallback) or offered to the caller. The
fallback only ever upgrades students who are still absent.

`transition` is pure: (snapshot, event) -> (snapshot, effect). The
coordinator owns the I/O, feeds results back in as events and publishes
each new snapshot to subscribers.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from errors import (
    AttendanceError,
    CredentialMissing,
    FallbackError,
    ImageUnavailable,
    InvalidResponse,
    NetworkError,
    RecognitionError,
    RequestFailed,
)
from name_matching import best_match, clean_name
from schemas import AttendanceRecord, PresenceDecision, Student, all_absent

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────
CONFIDENCE_THRESHOLD = 0.75   # a match at or above this marks the student present
LOW_CONFIDENCE_BAR = 0.75     # matches below this count as shaky for escalation
MATCH_FLOOR = 0.6             # best matches below this are not matches at all
LOW_CONFIDENCE_SHARE = 0.5    # escalate when more than this share is shaky
MISSED_TOLERANCE = 1          # detected - present >= this is suspicious
EXCESS_TOLERANCE = 3          # present - detected > this is suspicious

FALLBACK_SCOPES = ("absent", "roster")


class Phase(str, Enum):
    IDLE = "idle"
    PROCESSING_LOCAL = "processing_local"
    ESCALATION_OFFERED = "escalation_offered"
    PROCESSING_FALLBACK = "processing_fallback"
    DECIDED = "decided"


PROCESSING = (Phase.PROCESSING_LOCAL, Phase.PROCESSING_FALLBACK)


class Effect(str, Enum):
    NONE = "none"
    RUN_LOCAL = "run_local"
    RUN_FALLBACK = "run_fallback"


class InvalidTransition(RuntimeError):
    pass


class CoordinatorBusy(InvalidTransition):
    """A recognition pass is already in flight."""


# ══════════════════════════════════════════════════════════════════════════════
# Matching helpers
# ══════════════════════════════════════════════════════════════════════════════

def _name_index(students: Sequence[Student]) -> Tuple[List[str], Dict[str, str]]:
    names, roll_for = [], {}
    for s in students:
        names.append(s.name)
        roll_for.setdefault(s.name, s.roll_number)
    return names, roll_for


def match_lines(lines: Iterable[str], roster: Sequence[Student]) -> Dict[str, float]:
    """Best score per roll number over all lines; highest score wins."""
    names, roll_for = _name_index(roster)
    scores: Dict[str, float] = {}
    for line in lines:
        hit = best_match(line, names)
        if hit is None:
            continue
        roll = roll_for[hit[0]]
        scores[roll] = max(scores.get(roll, 0.0), hit[1])
    return scores


def produced_matches(scores: Mapping[str, float]) -> Dict[str, float]:
    return {roll: s for roll, s in scores.items() if s >= MATCH_FLOOR}


def should_escalate(matches: Mapping[str, float]) -> bool:
    if not matches:
        return True
    shaky = sum(1 for s in matches.values() if s < LOW_CONFIDENCE_BAR)
    return shaky / len(matches) > LOW_CONFIDENCE_SHARE


def count_mismatch(detected: int, present: int) -> bool:
    missed = detected - present
    excess = present - detected
    return missed >= MISSED_TOLERANCE or excess > EXCESS_TOLERANCE


def _distinct_names(names: Iterable[str]) -> Tuple[str, ...]:
    seen = []
    for n in names:
        key = clean_name(n).casefold()
        if key and key not in seen:
            seen.append(key)
    return tuple(seen)


# ══════════════════════════════════════════════════════════════════════════════
# State
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Policy:
    roster: Tuple[Student, ...]
    threshold: float = CONFIDENCE_THRESHOLD
    auto_fallback: bool = False
    fallback_scope: str = "absent"

    def __post_init__(self):
        if self.fallback_scope not in FALLBACK_SCOPES:
            raise ValueError(f"fallback_scope must be one of {FALLBACK_SCOPES}")


@dataclass(frozen=True)
class Snapshot:
    phase: Phase
    presence: Mapping[str, bool]
    image_id: int = 0
    scores: Mapping[str, float] = field(default_factory=dict)
    detected: Optional[Tuple[str, ...]] = None
    escalate: bool = False
    fallback_used: bool = False
    error: Optional[AttendanceError] = None
    local_error: Optional[RecognitionError] = None

    @classmethod
    def initial(cls, roster: Sequence[Student], image_id: int = 0) -> "Snapshot":
        return cls(phase=Phase.IDLE, presence=all_absent(roster), image_id=image_id)

    @property
    def decision(self) -> PresenceDecision:
        return dict(self.presence)

    @property
    def present_count(self) -> int:
        return sum(1 for v in self.presence.values() if v)

    @property
    def detected_count(self) -> int:
        return len(self.detected or ())

    @property
    def mismatch(self) -> bool:
        """Advisory: detected names and present marks disagree noticeably."""
        if self.detected is None:
            return False
        return count_mismatch(self.detected_count, self.present_count)

    @property
    def busy(self) -> bool:
        return self.phase in PROCESSING

    def absent_students(self, roster: Sequence[Student]) -> List[Student]:
        return [s for s in roster if not self.presence.get(s.roll_number, False)]


# ── Events ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ImageSelected:
    image_id: int


@dataclass(frozen=True)
class LocalStarted:
    pass


@dataclass(frozen=True)
class LocalFinished:
    lines: Tuple[str, ...] = ()
    error: Optional[RecognitionError] = None


@dataclass(frozen=True)
class FallbackRequested:
    pass


@dataclass(frozen=True)
class FallbackFinished:
    names: Tuple[str, ...] = ()
    context: Tuple[str, ...] = ()
    error: Optional[AttendanceError] = None


@dataclass(frozen=True)
class EscalationDeclined:
    pass


@dataclass(frozen=True)
class Toggled:
    roll_number: str


@dataclass(frozen=True)
class AllMarked:
    present: bool


@dataclass(frozen=True)
class ExistingLoaded:
    presence: Mapping[str, bool]


@dataclass(frozen=True)
class Reset:
    pass


def fallback_context(state: Snapshot, policy: Policy) -> Tuple[str, ...]:
    if policy.fallback_scope == "roster":
        return tuple(s.name for s in policy.roster)
    return tuple(s.name for s in state.absent_students(policy.roster))


def apply_fallback_names(state: Snapshot, policy: Policy, names: Iterable[str]) -> Dict[str, bool]:
    """Match fallback names against students still absent; never downgrade."""
    presence = dict(state.presence)
    absent = state.absent_students(policy.roster)
    candidates, roll_for = _name_index(absent)
    for raw in names:
        hit = best_match(clean_name(raw), candidates)
        if hit is not None and hit[1] >= policy.threshold:
            presence[roll_for[hit[0]]] = True
    return presence


def _fresh_attempt(state: Snapshot, policy: Policy, phase: Phase) -> Snapshot:
    return Snapshot(phase=phase, presence=all_absent(policy.roster), image_id=state.image_id)


def transition(state: Snapshot, event, policy: Policy) -> Tuple[Snapshot, Effect]:
    """Pure state transition; raises InvalidTransition for illegal events."""
    phase = state.phase

    if isinstance(event, ImageSelected):
        # Any pass still running for the old image becomes stale and nothing
        # it marked carries over to the new sheet.
        return Snapshot.initial(policy.roster, event.image_id), Effect.NONE

    if isinstance(event, Reset):
        return Snapshot.initial(policy.roster, state.image_id), Effect.NONE

    if phase in PROCESSING and not isinstance(event, (LocalFinished, FallbackFinished)):
        raise CoordinatorBusy(f"{type(event).__name__} while {phase.value}")

    if isinstance(event, LocalStarted):
        return _fresh_attempt(state, policy, Phase.PROCESSING_LOCAL), Effect.RUN_LOCAL

    if isinstance(event, LocalFinished):
        if phase is not Phase.PROCESSING_LOCAL:
            raise InvalidTransition(f"local result while {phase.value}")
        scores = {} if event.error else match_lines(event.lines, policy.roster)
        presence = dict(all_absent(policy.roster))
        for roll, score in scores.items():
            if score >= policy.threshold:
                presence[roll] = True
        escalate = should_escalate(produced_matches(scores))
        nxt = replace(state, presence=presence, scores=scores,
                      detected=_distinct_names(event.lines), escalate=escalate,
                      error=None, local_error=event.error)
        if not escalate:
            return replace(nxt, phase=Phase.DECIDED), Effect.NONE
        if policy.auto_fallback:
            return replace(nxt, phase=Phase.PROCESSING_FALLBACK), Effect.RUN_FALLBACK
        return replace(nxt, phase=Phase.ESCALATION_OFFERED), Effect.NONE

    if isinstance(event, FallbackRequested):
        if phase is Phase.IDLE:
            return _fresh_attempt(state, policy, Phase.PROCESSING_FALLBACK), Effect.RUN_FALLBACK
        return replace(state, phase=Phase.PROCESSING_FALLBACK, error=None), Effect.RUN_FALLBACK

    if isinstance(event, FallbackFinished):
        if phase is not Phase.PROCESSING_FALLBACK:
            raise InvalidTransition(f"fallback result while {phase.value}")
        if event.error is not None:
            return replace(state, phase=Phase.DECIDED, error=event.error), Effect.NONE
        presence = apply_fallback_names(state, policy, event.names)
        detected = _distinct_names((state.detected or ()) + tuple(event.names))
        return replace(state, phase=Phase.DECIDED, presence=presence, detected=detected,
                       fallback_used=True, error=None), Effect.NONE

    if isinstance(event, EscalationDeclined):
        if phase is not Phase.ESCALATION_OFFERED:
            raise InvalidTransition(f"nothing to decline while {phase.value}")
        return replace(state, phase=Phase.DECIDED), Effect.NONE

    if isinstance(event, Toggled):
        if event.roll_number not in state.presence:
            raise KeyError(event.roll_number)
        presence = dict(state.presence)
        presence[event.roll_number] = not presence[event.roll_number]
        return replace(state, presence=presence), Effect.NONE

    if isinstance(event, AllMarked):
        return replace(state, presence={r: event.present for r in state.presence}), Effect.NONE

    if isinstance(event, ExistingLoaded):
        presence = dict(state.presence)
        presence.update({r: v for r, v in event.presence.items() if r in presence})
        return replace(state, presence=presence), Effect.NONE

    raise InvalidTransition(f"unknown event {event!r}")


# ══════════════════════════════════════════════════════════════════════════════
# Coordinator
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PassResult:
    snapshot: Snapshot
    stale: bool = False


class RecognitionCoordinator:
    """
    Runs recognition passes for one attendance session.

    Not reentrant: a second process_image / request_fallback while a pass is
    in flight raises CoordinatorBusy. Selecting a new image mid-pass is
    allowed; the running pass then finishes as stale and commits nothing.
    """

    def __init__(self, roster: Sequence[Student], recognizer: Callable[[bytes], List[str]],
                 fallback=None, auto_fallback: bool = False, fallback_scope: str = "absent",
                 threshold: float = CONFIDENCE_THRESHOLD):
        self.policy = Policy(roster=tuple(roster), threshold=threshold,
                             auto_fallback=auto_fallback, fallback_scope=fallback_scope)
        self.recognizer = recognizer
        self.fallback = fallback
        self._state = Snapshot.initial(self.policy.roster)
        self._image: Optional[bytes] = None
        self._busy = threading.Lock()
        self._state_lock = threading.Lock()
        self._listeners: List[Callable[[Snapshot], None]] = []

    # ── Observation ───────────────────────────────────────────────────────────

    @property
    def state(self) -> Snapshot:
        return self._state

    @property
    def roster(self) -> Tuple[Student, ...]:
        return self.policy.roster

    @property
    def has_image(self) -> bool:
        return bool(self._image)

    def subscribe(self, listener: Callable[[Snapshot], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _dispatch(self, event, image_id: Optional[int] = None) -> Optional[Tuple[Snapshot, Effect]]:
        """Apply an event; with image_id, only if that image is still current."""
        with self._state_lock:
            if image_id is not None and self._state.image_id != image_id:
                logger.info("Discarding result for replaced image #%d", image_id)
                return None
            before = self._state.phase
            self._state, effect = transition(self._state, event, self.policy)
            snap = self._state
        if snap.phase is not before:
            logger.info("Recognition phase %s → %s", before.value, snap.phase.value)
        for listener in list(self._listeners):
            listener(snap)
        return snap, effect

    # ── Image selection ───────────────────────────────────────────────────────

    def select_image(self, image_bytes: Optional[bytes]) -> int:
        with self._state_lock:
            self._image = image_bytes or None
            image_id = self._state.image_id + 1
        self._dispatch(ImageSelected(image_id))
        return image_id

    # ── Passes ────────────────────────────────────────────────────────────────

    def process_image(self, image_bytes: Optional[bytes] = None) -> PassResult:
        """Hard-reset to all absent, run the local pass, then escalate per policy."""
        if not self._busy.acquire(blocking=False):
            raise CoordinatorBusy("recognition already in progress")
        try:
            if image_bytes is not None:
                self.select_image(image_bytes)
            with self._state_lock:
                image, image_id = self._image, self._state.image_id
            self._dispatch(LocalStarted())

            lines, error = self._run_local(image)
            committed = self._dispatch(LocalFinished(tuple(lines), error), image_id)
            if committed is None:
                return PassResult(self._state, stale=True)
            snap, effect = committed
            logger.info("Local pass: %d lines, %d present, escalate=%s",
                        len(lines), snap.present_count, snap.escalate)

            if effect is Effect.RUN_FALLBACK:
                return self._fallback_pass(image, image_id)
            return PassResult(snap)
        finally:
            self._busy.release()

    def request_fallback(self) -> PassResult:
        """Accept the escalation offer, or ask for the AI pass explicitly."""
        if not self._busy.acquire(blocking=False):
            raise CoordinatorBusy("recognition already in progress")
        try:
            with self._state_lock:
                image, image_id = self._image, self._state.image_id
            self._dispatch(FallbackRequested())
            return self._fallback_pass(image, image_id)
        finally:
            self._busy.release()

    accept_escalation = request_fallback

    def decline_escalation(self) -> Snapshot:
        return self._dispatch(EscalationDeclined())[0]

    def _fallback_pass(self, image: Optional[bytes], image_id: int) -> PassResult:
        context = fallback_context(self._state, self.policy)
        names, error = self._run_fallback(image, context)
        committed = self._dispatch(FallbackFinished(tuple(names), context, error), image_id)
        if committed is None:
            return PassResult(self._state, stale=True)
        snap = committed[0]
        if error is not None:
            logger.warning("Fallback pass failed (%s): %s", error.kind, error)
        else:
            logger.info("Fallback pass: %d names, %d present", len(names), snap.present_count)
        return PassResult(snap)

    def _run_local(self, image: Optional[bytes]):
        if not image:
            return [], ImageUnavailable()
        try:
            return list(self.recognizer(image)), None
        except RecognitionError as e:
            logger.warning("Local OCR failed (%s): %s", e.kind, e)
            return [], e
        except Exception as e:
            logger.exception("Unexpected OCR failure")
            return [], RequestFailed(str(e))

    def _run_fallback(self, image: Optional[bytes], context: Sequence[str]):
        if self.fallback is None:
            return [], CredentialMissing("no fallback service configured")
        if not image:
            return [], ImageUnavailable()
        try:
            return list(self.fallback.recognize_names(image, list(context))), None
        except FallbackError as e:
            return [], e
        except OSError as e:
            logger.exception("Unexpected fallback transport failure")
            return [], NetworkError(str(e))
        except Exception as e:
            logger.exception("Unexpected fallback failure")
            return [], InvalidResponse(str(e))

    # ── Manual correction ─────────────────────────────────────────────────────

    def toggle(self, roll_number: str) -> Snapshot:
        snap = self._dispatch(Toggled(roll_number))[0]
        logger.info("Toggled %s → %s", roll_number,
                    "present" if snap.presence[roll_number] else "absent")
        return snap

    def mark_all_present(self) -> Snapshot:
        return self._dispatch(AllMarked(True))[0]

    def mark_all_absent(self) -> Snapshot:
        return self._dispatch(AllMarked(False))[0]

    def load_existing(self, records: Iterable[AttendanceRecord]) -> Snapshot:
        return self._dispatch(ExistingLoaded({r.student_roll_number: r.is_present for r in records}))[0]

    def reset(self) -> Snapshot:
        with self._state_lock:
            self._image = None
        return self._dispatch(Reset())[0]

    # ── Handoff ───────────────────────────────────────────────────────────────

    def final_decision(self) -> Tuple[PresenceDecision, bool]:
        """The decision and mismatch flag to hand to the reconciler."""
        snap = self._state
        if snap.phase not in (Phase.DECIDED, Phase.IDLE):
            raise InvalidTransition(f"no final decision while {snap.phase.value}")
        return snap.decision, snap.mismatch
