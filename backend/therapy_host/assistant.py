from __future__ import annotations

import logging
import os
from typing import Any

import httpx

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a supportive assistant inside a therapy chat that a licensed therapist supervises. "
    "Be warm, brief and concrete. Never diagnose, never give medication advice, and encourage the "
    "patient to reach their therapist for anything clinical or urgent."
)
_DRAFT_PROMPT = (
    "Draft the therapist's next reply to the patient. Write it in the therapist's voice, plain text, "
    "two to four sentences. The therapist will review and edit it before sending."
)
_SUMMARY_PROMPT = (
    "Summarize this therapy chat for the therapist's clinical notes: main themes, risk indicators, "
    "and open follow-ups. Plain text, at most eight short lines."
)

FALLBACK_REPLY = (
    "Thank you for sharing that. I'm here with you, and your therapist can read this conversation too. "
    "If you'd like them to respond personally, mention @therapist in your message."
)


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            item["text"] for item in content if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    return ""


def _transcript_lines(history: list[dict[str, Any]], limit: int = 30) -> list[str]:
    lines: list[str] = []
    for message in history[-limit:]:
        content = str(message.get("content") or "").strip()
        if not content:
            continue
        speaker = message.get("label") or message.get("sender_type") or "user"
        lines.append(f"{speaker}: {content[:600]}")
    return lines


class AssistantReplies:
    """AI text for replies, therapist drafts and summaries.

    Uses an OpenAI-compatible chat completion endpoint when a key is
    configured and falls back to deterministic text otherwise.
    """

    def __init__(self) -> None:
        self.provider = (os.getenv("THERAPY_HOST_CHAT_PROVIDER") or "auto").strip().lower()
        self.api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
        self.base_url = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1").rstrip("/")
        self.model = (os.getenv("THERAPY_HOST_CHAT_MODEL") or "gpt-4o-mini").strip()
        self.timeout_seconds = float(os.getenv("THERAPY_HOST_CHAT_TIMEOUT_SECONDS", "25"))

    @property
    def enabled(self) -> bool:
        return self.provider != "none" and bool(self.api_key)

    def _chat(self, messages: list[dict[str, str]], *, temperature: float = 0.35) -> str | None:
        payload = {"model": self.model, "temperature": temperature, "messages": messages}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        with httpx.Client(timeout=httpx.Timeout(self.timeout_seconds, connect=8.0)) as client:
            response = client.post(f"{self.base_url}/chat/completions", headers=headers, json=payload)
        if response.status_code >= 400:
            raise RuntimeError(_provider_error_message(response))
        text = _coerce_completion_text(response.json()).strip()
        return text or None

    def _complete(self, messages: list[dict[str, str]], fallback: str, *, purpose: str) -> str:
        if not self.enabled:
            return fallback
        try:
            text = self._chat(messages)
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            logger.warning(f"Assistant {purpose} call failed: {exc}")
            return fallback
        if not text:
            logger.info(f"Assistant {purpose} returned an empty completion")
            return fallback
        return text

    def reply(self, history: list[dict[str, Any]]) -> str:
        messages = [{"role": "system", "content": _SYSTEM_PROMPT}]
        for message in history[-20:]:
            content = str(message.get("content") or "").strip()
            if content and message.get("role") in {"user", "assistant"}:
                messages.append({"role": message["role"], "content": content[:1200]})
        return self._complete(messages, FALLBACK_REPLY, purpose="reply")

    def draft(self, history: list[dict[str, Any]]) -> str:
        lines = _transcript_lines(history)
        last_subject = next(
            (str(m.get("content") or "") for m in reversed(history) if m.get("sender_type") == "subject"),
            "",
        )
        fallback = "Thank you for telling me this. I'd like to understand more about how you're feeling right now."
        if last_subject:
            fallback = f'I read your message ("{last_subject[:80]}"). {fallback}'
        messages = [
            {"role": "system", "content": _DRAFT_PROMPT},
            {"role": "user", "content": "\n".join(lines) or "(no messages yet)"},
        ]
        return self._complete(messages, fallback, purpose="draft")

    def summary(self, history: list[dict[str, Any]]) -> str:
        lines = _transcript_lines(history, limit=60)
        counts: dict[str, int] = {}
        for message in history:
            sender = str(message.get("sender_type") or "user")
            counts[sender] = counts.get(sender, 0) + 1
        breakdown = ", ".join(f"{sender}: {count}" for sender, count in sorted(counts.items()))
        fallback = f"Conversation summary: {len(history)} messages ({breakdown or 'none'})."
        if lines:
            fallback += f"\nMost recent: {lines[-1]}"
        messages = [
            {"role": "system", "content": _SUMMARY_PROMPT},
            {"role": "user", "content": "\n".join(lines) or "(no messages yet)"},
        ]
        return self._complete(messages, fallback, purpose="summary")
