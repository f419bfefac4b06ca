from dataclasses import dataclass, field, fields
from typing import List, Optional


def to_camel(name: str) -> str:
    """Convert a snake_case attribute name to its persisted camelCase key."""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class Record:
    """Mixin converting dataclass records to and from persisted JSON records."""

    def to_record(self) -> dict:
        return {to_camel(f.name): getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_record(cls, record: dict):
        values = {}
        for f in fields(cls):
            key = to_camel(f.name)
            if key in record:
                values[f.name] = record[key]
        return cls(**values)


@dataclass
class User(Record):
    id: str
    email: str
    password: str  # stored in plain text
    name: str
    role: str  # 'club_leader' or 'student'
    created_at: str


@dataclass
class Session(Record):
    user_id: str
    email: str
    name: str
    role: str

    @classmethod
    def for_user(cls, user: User) -> "Session":
        """Snapshot the identity fields of a user."""
        return cls(user_id=user.id, email=user.email, name=user.name, role=user.role)


@dataclass
class Club(Record):
    id: str
    name: str
    leader_id: str
    created_at: str
    updated_at: str
    description: str = ""
    member_ids: List[str] = field(default_factory=list)


@dataclass
class Festival(Record):
    id: str
    name: str
    start_date: str
    end_date: str
    organizer_id: str
    club_id: str
    created_at: str
    updated_at: str
    description: str = ""
    location: str = ""
    poster: str = ""  # data URL or empty
    brochure: str = ""  # data URL or empty


@dataclass
class SubEvent(Record):
    id: str
    festival_id: str
    name: str
    start_date: str
    start_time: str
    end_date: str
    end_time: str
    max_participants: int
    created_at: str
    updated_at: str
    description: str = ""
    location: str = ""


@dataclass
class Task(Record):
    id: str
    title: str
    status: str  # 'pending', 'in_progress' or 'completed'
    assignee_id: str
    festival_id: str
    due_date: str
    created_at: str
    updated_at: str
    description: str = ""
    sub_event_id: Optional[str] = None


@dataclass
class Expense(Record):
    id: str
    title: str
    amount: float
    category: str
    date: str
    festival_id: str
    created_by: str
    created_at: str
    updated_at: str
    description: str = ""
    sub_event_id: Optional[str] = None


@dataclass
class Participation(Record):
    id: str
    user_id: str
    festival_id: str
    status: str  # 'registered', 'attended' or 'cancelled'
    registration_date: str
    created_at: str
    user_name: str = ""
    sub_event_id: Optional[str] = None
