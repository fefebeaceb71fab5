"""Data models for request dispatch."""

from dataclasses import dataclass, field
from datetime import datetime

ROLES = ("PM", "Engineer", "SuperAdmin", "Client")
OPERATOR_ROLES = ("PM", "Engineer")

REQUEST_STATUSES = ("Pending", "InProgress", "Review", "Complete")
TASK_STATUSES = ("Pending", "InProgress", "Complete")


@dataclass
class User:
    id: str
    name: str
    role: str
    email: str | None = None
    is_busy: bool = False
    active_assignment_count: int = 0
    online: bool = False
    last_active_at: datetime | None = None
    last_assigned_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Rating:
    score: int | None = None
    comment: str | None = None


@dataclass
class Ratings:
    pm: Rating = field(default_factory=Rating)
    engineer: Rating = field(default_factory=Rating)
    coordination: Rating = field(default_factory=Rating)


@dataclass
class Request:
    id: str
    client_name: str
    email: str
    title: str
    description: str = ""
    completion_date: str | None = None
    client_id: str | None = None
    status: str = "Pending"
    pm_id: str | None = None
    engineer_id: str | None = None
    room_id: str | None = None
    engineer_accepted_once: bool = False
    reopen_requested_by_client: bool = False
    ratings: Ratings = field(default_factory=Ratings)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class RequestEvent:
    id: int | None = None
    request_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    actor_id: str | None = None
    created_at: datetime | None = None


@dataclass
class Task:
    id: str
    request_id: str
    pm_id: str
    engineer_id: str
    title: str
    description: str = ""
    status: str = "Pending"
    deadline: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Room:
    id: str
    request_id: str
    title: str
    is_closed: bool = False
    reopen_requested_by_client: bool = False
    reopen_requested_at: datetime | None = None
    reopen_requested_by: str | None = None
    members: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class RoomNotice:
    id: int | None = None
    room_id: str = ""
    kind: str = ""
    text: str = ""
    created_at: datetime | None = None


@dataclass
class Notification:
    user_id: str
    type: str
    title: str
    body: str = ""
    request_id: str | None = None
    task_id: str | None = None
    meta: dict = field(default_factory=dict)
    id: int | None = None
    read_at: datetime | None = None
    created_at: datetime | None = None
