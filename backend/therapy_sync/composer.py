from __future__ import annotations

from .mentions import MentionSession

MAX_MESSAGE_LENGTH = 4000


class MessageComposer:
    def __init__(
        self,
        *,
        mentions: MentionSession | None = None,
        max_length: int = MAX_MESSAGE_LENGTH,
        disabled: bool = False,
    ) -> None:
        self.mentions = mentions or MentionSession()
        self.max_length = max_length
        self.disabled = disabled
        self.text = ""
        self.cursor = 0

    @property
    def remaining(self) -> int:
        return self.max_length - len(self.text)

    async def set_text(self, text: str, cursor: int | None = None) -> None:
        self.text = text[: self.max_length]
        self.cursor = len(self.text) if cursor is None else max(0, min(cursor, len(self.text)))
        await self.mentions.update(self.text, self.cursor)

    def handle_key(self, key: str) -> bool:
        consumed = self.mentions.handle_key(key)
        if consumed and self.mentions.text != self.text:
            self._sync_from_mentions()
        return consumed

    def choose(self, index: int) -> bool:
        if not self.mentions.is_open or not 0 <= index < len(self.mentions.items):
            return False
        self.mentions.commit(self.mentions.items[index])
        self._sync_from_mentions()
        return True

    def insert_transcript(self, transcript: str) -> None:
        """Insert transcribed speech at the cursor without overwriting."""
        spoken = (transcript or "").strip()
        if not spoken:
            return
        before = self.text[: self.cursor]
        after = self.text[self.cursor :]
        if before and not before[-1].isspace():
            spoken = f" {spoken}"
        inserted = f"{spoken} "
        self.text = f"{before}{inserted}{after}"[: self.max_length]
        self.cursor = min(len(before) + len(inserted), len(self.text))
        self.mentions.close()

    def submit(self) -> str | None:
        content = self.text.strip()
        if not content or self.disabled:
            return None
        self.text = ""
        self.cursor = 0
        self.mentions.close()
        return content

    def _sync_from_mentions(self) -> None:
        self.text = self.mentions.text[: self.max_length]
        self.cursor = min(self.mentions.cursor, len(self.text))
