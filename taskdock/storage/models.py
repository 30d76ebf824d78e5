from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

USERS = "users"
LISTS = "lists"
TASKS = "tasks"
IP_RECORDS = "ip_records"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Session:
    token: str
    expires_at: int

    @classmethod
    def new(cls, token: str, ttl_seconds: int, *, now: Optional[float] = None) -> "Session":
        issued = time.time() if now is None else now
        return cls(token=token, expires_at=int(issued + ttl_seconds))

    def to_doc(self) -> Dict[str, Any]:
        return {"token": self.token, "expires_at": self.expires_at}

    @classmethod
    def from_doc(cls, data: Dict[str, Any]) -> "Session":
        return cls(token=data["token"], expires_at=int(data["expires_at"]))


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    password_algo: str = "argon2id"
    sessions: List[Session] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "password_hash": self.password_hash,
            "password_algo": self.password_algo,
            "sessions": [s.to_doc() for s in self.sessions],
            "created_at": self.created_at,
        }

    @classmethod
    def from_doc(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            sessions=[Session.from_doc(s) for s in data.get("sessions") or []],
            created_at=float(data.get("created_at", time.time())),
        )


@dataclass
class TaskList:
    id: str
    title: str
    owner_id: str

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_doc(cls, data: Dict[str, Any]) -> "TaskList":
        return cls(id=str(data["id"]), title=data["title"], owner_id=str(data["owner_id"]))


@dataclass
class Task:
    id: str
    title: str
    list_id: str
    completed: bool = False

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_doc(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=str(data["id"]),
            title=data["title"],
            list_id=str(data["list_id"]),
            completed=bool(data.get("completed", False)),
        )


@dataclass
class IpRecord:
    address: str
    first_seen: float
    count: int = 1

    def to_doc(self) -> Dict[str, Any]:
        return {"id": self.address, **asdict(self)}

    @classmethod
    def from_doc(cls, data: Dict[str, Any]) -> "IpRecord":
        return cls(
            address=data["address"],
            first_seen=float(data["first_seen"]),
            count=int(data["count"]),
        )
