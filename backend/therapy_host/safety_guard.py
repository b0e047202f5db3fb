from __future__ import annotations

import re
from dataclasses import dataclass, field

DEFAULT_BLOCKED_MESSAGE = (
    "Your message was not delivered to the assistant because it may describe an emergency. "
    "Your therapist has been notified. If you are in immediate danger, call your local emergency number."
)


class HostPolicyError(Exception):
    def __init__(self, message: str, *, status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class SafetyDecision:
    blocked: bool
    concerns: list[str] = field(default_factory=list)
    message: str | None = None


class SafetyGuard:
    _DANGER_PATTERNS = {
        "self_harm": re.compile(r"self[- ]?harm|hurt(?:ing)? myself|cut(?:ting)? myself", re.IGNORECASE),
        "suicide": re.compile(r"suicid|kill myself|end my life", re.IGNORECASE),
        "overdose": re.compile(r"overdose", re.IGNORECASE),
        "violence": re.compile(r"\bkill (?:him|her|them|someone)\b", re.IGNORECASE),
    }

    def __init__(self, *, extra_keywords: list[str] | None = None, blocked_message: str | None = None) -> None:
        self._keywords = [keyword.strip().lower() for keyword in extra_keywords or [] if keyword.strip()]
        self.blocked_message = blocked_message or DEFAULT_BLOCKED_MESSAGE

    def check(self, text: str) -> SafetyDecision:
        cleaned = (text or "").strip()
        concerns = [name for name, pattern in self._DANGER_PATTERNS.items() if pattern.search(cleaned)]
        lowered = cleaned.lower()
        concerns.extend(keyword for keyword in self._keywords if keyword in lowered and keyword not in concerns)
        if not concerns:
            return SafetyDecision(blocked=False)
        return SafetyDecision(blocked=True, concerns=concerns, message=self.blocked_message)

    def ensure_role(self, role: str | None, expected: str) -> None:
        if role != expected:
            raise HostPolicyError(f"This action requires the {expected} role.")

    def ensure_message(self, text: str, *, max_length: int) -> str:
        cleaned = (text or "").strip()
        if not cleaned:
            raise HostPolicyError("Message cannot be empty", status_code=400)
        if len(cleaned) > max_length:
            raise HostPolicyError(f"Message exceeds {max_length} characters", status_code=400)
        return cleaned
