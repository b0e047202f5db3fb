from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from .schemas import Message

SEND_STATUSES = {"sent", "blocked", "failed", "skipped"}

Tick = Callable[[], Any]


@dataclass(frozen=True)
class SendOutcome:
    status: str
    message: Message | None = None
    notice: Message | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if self.status not in SEND_STATUSES:
            raise ValueError(f"Unknown send status: {self.status}")

    @property
    def sent(self) -> bool:
        return self.status == "sent"


@dataclass(frozen=True)
class MentionTrigger:
    kind: str
    query: str
    offset: int


@dataclass
class MentionScan:
    tag_all: bool = False
    therapist_ids: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)

    @property
    def tagged(self) -> bool:
        return self.tag_all or bool(self.therapist_ids) or bool(self.topics)


@dataclass(frozen=True)
class IndicatorState:
    visible: bool = False
    text: str = ""
