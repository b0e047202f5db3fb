from __future__ import annotations

from typing import Callable, Iterable

from .models import IndicatorState

DEFAULT_BADGE_CAP = 99

# Stable names the host UI binds its badge elements to.
CHAT_BADGE = "therapy-chat-badge"
FLOATING_BADGE = "tc-floating-badge"
FLOATING_ICON = "tc-floating-icon"

Renderer = Callable[[str, IndicatorState], None]


def format_badge_count(count: int, cap: int = DEFAULT_BADGE_CAP) -> str:
    if count <= 0:
        return ""
    return f"{cap}+" if count > cap else str(count)


class BadgeIndicator:
    def __init__(self, name: str, *, cap: int = DEFAULT_BADGE_CAP) -> None:
        self.name = name
        self.cap = cap
        self.state = IndicatorState()

    def set_count(self, count: int) -> bool:
        if count > 0:
            return self._apply(IndicatorState(visible=True, text=format_badge_count(count, self.cap)))
        return self.hide()

    def show(self, text: str = "") -> bool:
        return self._apply(IndicatorState(visible=True, text=text))

    def hide(self) -> bool:
        return self._apply(IndicatorState(visible=False, text=""))

    def _apply(self, state: IndicatorState) -> bool:
        if state == self.state:
            return False
        self.state = state
        return True


class IndicatorBoard:
    """Every unread surface on the page, updated together."""

    def __init__(
        self,
        names: Iterable[str] = (CHAT_BADGE, FLOATING_BADGE),
        *,
        cap: int = DEFAULT_BADGE_CAP,
        renderer: Renderer | None = None,
    ) -> None:
        self.cap = cap
        self.renderer = renderer
        self.badges: dict[str, BadgeIndicator] = {}
        self.icon = BadgeIndicator(FLOATING_ICON, cap=cap)
        self.icon.state = IndicatorState(visible=True)
        self.count = 0
        for name in names:
            self.register(name)

    def register(self, name: str) -> BadgeIndicator:
        badge = self.badges.get(name)
        if badge is None:
            badge = BadgeIndicator(name, cap=self.cap)
            badge.set_count(self.count)
            self.badges[name] = badge
        return badge

    def update(self, count: int) -> None:
        self.count = max(0, int(count))
        for badge in self.badges.values():
            if badge.set_count(self.count):
                self._render(badge)

    def set_icon_visibility(self, panel_visible: bool) -> None:
        changed = self.icon.hide() if panel_visible else self.icon.show()
        if changed:
            self._render(self.icon)

    def state(self, name: str) -> IndicatorState:
        if name == FLOATING_ICON:
            return self.icon.state
        return self.badges[name].state

    def _render(self, badge: BadgeIndicator) -> None:
        if self.renderer is not None:
            self.renderer(badge.name, badge.state)
