import uuid
from datetime import date, datetime, time
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# A presence decision maps roll number -> present?, covering the whole roster.
PresenceDecision = Dict[str, bool]

_RECORD_NAMESPACE = uuid.UUID("6f1d2c1e-7a0b-4b7e-9d4c-1f3a5e8b2c90")


# --- Student Schemas ---

class Student(BaseModel):
    """A roster entry; the roll number is the identity."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., examples=["Jane Doe"])
    roll_number: str = Field(..., examples=["102"], description="Unique roll number.")


SAMPLE_STUDENTS: List[Student] = [
    Student(name="John Doe", roll_number="101"),
    Student(name="Jane Smith", roll_number="102"),
    Student(name="Bob Johnson", roll_number="103"),
    Student(name="Emily Davis", roll_number="104"),
    Student(name="Michael White", roll_number="105"),
]


# --- Attendance Schemas ---

class AttendanceRecord(BaseModel):
    """One student's presence on one calendar day."""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    date: datetime
    student_roll_number: str
    is_present: bool

    @property
    def day(self) -> date:
        return self.date.date()

    @classmethod
    def for_day(cls, when: datetime, roll_number: str, is_present: bool) -> "AttendanceRecord":
        """Build a record whose id depends only on (roll number, calendar day)."""
        return cls(
            id=record_id(roll_number, when),
            date=when,
            student_roll_number=roll_number,
            is_present=is_present,
        )


StudentList = TypeAdapter(List[Student])
RecordList = TypeAdapter(List[AttendanceRecord])


# --- Utility helpers ---

def start_of_day(when: Union[date, datetime]) -> datetime:
    if isinstance(when, datetime):
        return datetime.combine(when.date(), time.min, tzinfo=when.tzinfo)
    return datetime.combine(when, time.min)


def record_id(roll_number: str, when: Union[date, datetime]) -> uuid.UUID:
    return uuid.uuid5(_RECORD_NAMESPACE, f"{roll_number}:{start_of_day(when).date().isoformat()}")


def all_absent(roster: Iterable[Student]) -> PresenceDecision:
    return {s.roll_number: False for s in roster}


def present_rolls(decision: PresenceDecision) -> List[str]:
    return [roll for roll, present in decision.items() if present]


def find_student(roster: Iterable[Student], roll_number: str) -> Optional[Student]:
    return next((s for s in roster if s.roll_number == roll_number), None)
