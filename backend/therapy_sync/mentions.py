from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Iterable

from .models import MentionScan, MentionTrigger
from .schemas import TAG_URGENCIES, URGENCY_SEVERITY, Alert, MentionItem, Message, TagReason, urgency_rank

logger = logging.getLogger(__name__)

MentionFetcher = Callable[[], Awaitable[list[Any]]]

DEFAULT_MENTION = MentionItem(id="therapist", display="therapist", insert_text="@therapist")

DEFAULT_TAG_REASONS: tuple[TagReason, ...] = (
    TagReason(code="overwhelmed", label="I am feeling overwhelmed", urgency="normal"),
    TagReason(code="need_talk", label="I need to talk soon", urgency="urgent"),
    TagReason(code="urgent", label="This feels urgent", urgency="urgent"),
    TagReason(code="emergency", label="Emergency - please respond immediately", urgency="emergency"),
)

_TRIGGER_RE = re.compile(r"(?:^|\s)([@#])([^\s@#]*)$")
_TAG_ALL_RE = re.compile(r"(?:^|\s)@[Tt]herapist(?![\w-])")
_TOPIC_RE = re.compile(r"(?:^|\s)#([A-Za-z0-9_]+)")

COMMIT_KEYS = {"enter", "tab"}


def detect_trigger(text: str, cursor: int) -> MentionTrigger | None:
    """Return the open ``@``/``#`` token ending at ``cursor``, if any.

    The trigger must start the text or follow whitespace, and nothing but
    non-whitespace, non-trigger characters may sit between it and the
    cursor.
    """
    cursor = max(0, min(cursor, len(text)))
    match = _TRIGGER_RE.search(text[:cursor])
    if match is None:
        return None
    kind, query = match.group(1), match.group(2)
    return MentionTrigger(kind=kind, query=query, offset=cursor - len(query) - 1)


def filter_items(items: Iterable[MentionItem], query: str) -> list[MentionItem]:
    needle = query.lower()
    if not needle:
        return list(items)
    return [item for item in items if needle in item.display.lower()]


def parse_tag_reasons(raw: Any) -> list[TagReason]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else []
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed tag reason configuration")
            raw = []
    reasons: list[TagReason] = []
    for entry in raw if isinstance(raw, list) else []:
        if not isinstance(entry, dict):
            continue
        code = str(entry.get("key") or entry.get("code") or "").strip()
        label = str(entry.get("label") or "").strip()
        if not code or not label:
            continue
        urgency = entry.get("urgency")
        reasons.append(
            TagReason(code=code, label=label, urgency=urgency if urgency in TAG_URGENCIES else "normal")
        )
    return reasons or list(DEFAULT_TAG_REASONS)


def topic_items(reasons: Iterable[TagReason]) -> list[MentionItem]:
    return [MentionItem(id=reason.code, display=reason.code, insert_text=f"#{reason.code}") for reason in reasons]


def tag_message_text(reason: TagReason) -> str:
    return f"@therapist I would like to speak with my therapist #{reason.code}: {reason.label}"


def scan_mentions(
    content: str,
    tag_reasons: Iterable[TagReason],
    therapists: Iterable[MentionItem] = (),
) -> MentionScan:
    scan = MentionScan(tag_all=bool(_TAG_ALL_RE.search(content or "")))
    lowered = (content or "").lower()
    for therapist in therapists:
        if therapist.id == DEFAULT_MENTION.id:
            continue
        pattern = r"(?:^|\s)" + re.escape(therapist.insert_text.lower()) + r"(?![\w-])"
        if re.search(pattern, lowered) and therapist.id not in scan.therapist_ids:
            scan.therapist_ids.append(therapist.id)
    known = {reason.code for reason in tag_reasons}
    for code in _TOPIC_RE.findall(content or ""):
        if code in known and code not in scan.topics:
            scan.topics.append(code)
    return scan


def describe_tag(scan: MentionScan, tag_reasons: Iterable[TagReason]) -> TagReason:
    """Collapse a scan into the reason and urgency an alert should carry."""
    matched = [reason for reason in tag_reasons if reason.code in scan.topics]
    if not matched:
        return TagReason(code="mention", label="Therapist mentioned", urgency="normal")
    top = max(matched, key=lambda reason: urgency_rank(reason.urgency))
    return TagReason(code=top.code, label=top.label, urgency=top.urgency)


def tag_alerts_for(
    message: Message,
    scan: MentionScan,
    conversation_id: int,
    tag_reasons: Iterable[TagReason] = DEFAULT_TAG_REASONS,
) -> list[Alert]:
    """Unsaved ``tag_received`` alerts pointing back at ``message``.

    Direct mentions yield one alert per therapist; a group-wide
    ``@therapist`` or a topic-only tag yields a single untargeted alert.
    """
    if not scan.tagged:
        return []
    tag = describe_tag(scan, tag_reasons)
    targets: list[str | None] = [None] if scan.tag_all or not scan.therapist_ids else list(scan.therapist_ids)
    return [
        Alert(
            conversation_id=conversation_id,
            alert_type="tag_received",
            reason=tag.label,
            urgency=tag.urgency,
            severity=URGENCY_SEVERITY[tag.urgency],
            message_id=message.numeric_id,
            target_user_id=target,
        )
        for target in targets
    ]


class MentionSession:
    """Autocomplete state for one input field."""

    def __init__(
        self,
        *,
        fetch_mentions: MentionFetcher | None = None,
        topics: Iterable[MentionItem] | None = None,
        blur_grace: float = 0.15,
    ) -> None:
        self._fetch_mentions = fetch_mentions
        self._topics = list(topics) if topics is not None else topic_items(DEFAULT_TAG_REASONS)
        self.blur_grace = blur_grace
        self.text = ""
        self.cursor = 0
        self.trigger: MentionTrigger | None = None
        self.items: list[MentionItem] = []
        self.selected_index = 0
        self.is_open = False
        self._cache: dict[str, list[MentionItem]] = {}
        self._blur_handle: asyncio.TimerHandle | None = None

    async def update(self, text: str, cursor: int) -> None:
        self.text = text
        self.cursor = cursor
        trigger = detect_trigger(text, cursor)
        if trigger is None:
            self.close()
            return
        previous = self.trigger
        self.trigger = trigger
        candidates = await self._candidates(trigger.kind)
        if self.trigger is not trigger:
            return
        self.items = filter_items(candidates, trigger.query)
        if previous is None or previous.query != trigger.query or previous.kind != trigger.kind:
            self.selected_index = 0
        self.selected_index = min(self.selected_index, max(len(self.items) - 1, 0))
        self.is_open = True

    async def _candidates(self, kind: str) -> list[MentionItem]:
        cached = self._cache.get(kind)
        if cached is not None:
            return cached
        if kind == "#":
            items = list(self._topics)
        else:
            items = await self._fetch_directory()
        self._cache[kind] = items
        return items

    async def _fetch_directory(self) -> list[MentionItem]:
        if self._fetch_mentions is None:
            return [DEFAULT_MENTION]
        try:
            raw = await self._fetch_mentions()
        except Exception as exc:
            logger.warning(f"Mention lookup failed: {exc}")
            return [DEFAULT_MENTION]
        items = [item if isinstance(item, MentionItem) else MentionItem.model_validate(item) for item in raw or []]
        return items or [DEFAULT_MENTION]

    def handle_key(self, key: str) -> bool:
        if not self.is_open or not self.items:
            return False
        if key == "down":
            self.selected_index = min(self.selected_index + 1, len(self.items) - 1)
            return True
        if key == "up":
            self.selected_index = max(self.selected_index - 1, 0)
            return True
        if key in COMMIT_KEYS:
            self.commit()
            return True
        if key == "escape":
            self.close()
            return True
        return False

    def commit(self, item: MentionItem | None = None) -> tuple[str, int] | None:
        trigger = self.trigger
        if trigger is None:
            return None
        if item is None:
            if not self.items:
                return None
            item = self.items[self.selected_index]
        before = self.text[: trigger.offset]
        after = self.text[self.cursor :]
        self.text = f"{before}{item.insert_text} {after}"
        self.cursor = len(before) + len(item.insert_text) + 1
        self.close()
        return self.text, self.cursor

    def close(self) -> None:
        self._cancel_blur()
        self.is_open = False
        self.trigger = None
        self.items = []
        self.selected_index = 0

    def blur(self) -> None:
        self._cancel_blur()
        self._blur_handle = asyncio.get_running_loop().call_later(self.blur_grace, self.close)

    def focus(self) -> None:
        self._cancel_blur()

    def _cancel_blur(self) -> None:
        if self._blur_handle is not None:
            self._blur_handle.cancel()
            self._blur_handle = None
