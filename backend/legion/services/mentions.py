"""@mention detection, autocomplete and extraction."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from legion.schemas import MemberRead

MENTION_PATTERN = re.compile(r"@(\w+)", re.ASCII)
DEFAULT_PAGE_SIZE = 8

# Members without a server role sort after every role
_NO_ROLE_POSITION = 999


@dataclass(frozen=True, slots=True)
class MentionTrigger:
    """An in-progress mention: the ``@`` index and the text typed after it."""

    start: int
    term: str

    @property
    def end(self) -> int:
        return self.start + 1 + len(self.term)


@dataclass(frozen=True, slots=True)
class MentionData:
    user_id: str
    username: str


@dataclass(frozen=True, slots=True)
class ContentSegment:
    """Piece of message content; ``username`` is set for mention segments."""

    text: str
    username: str | None = None

    @property
    def is_mention(self) -> bool:
        return self.username is not None


def find_mention_trigger(text: str, caret: int) -> MentionTrigger | None:
    """Return the mention being typed at ``caret``, if any."""

    caret = max(0, min(caret, len(text)))
    before = text[:caret]
    start = before.rfind("@")
    if start == -1:
        return None
    if start > 0 and before[start - 1] == "\\":
        return None
    term = before[start + 1 :]
    if any(char.isspace() for char in term):
        return None
    return MentionTrigger(start=start, term=term)


def _role_position(member: MemberRead) -> int:
    if member.role is None:
        return _NO_ROLE_POSITION
    return member.role.rank


def filter_candidates(
    members: Iterable[MemberRead], term: str, limit: int = DEFAULT_PAGE_SIZE
) -> list[MemberRead]:
    """
    Filter members matching ``term`` for the mention picker.

    Matching is a case-insensitive substring test. Results are ordered by
    server-role position (members without a role last), then prefix matches
    before other matches, then username.

    Args:
        members: Candidate members of the current server
        term: Text typed after the ``@``
        limit: Page size of the picker

    Returns:
        At most ``limit`` matching members
    """
    needle = term.lower()
    matches = [member for member in members if needle in member.username.lower()]
    matches.sort(
        key=lambda member: (
            _role_position(member),
            not member.username.lower().startswith(needle),
            member.username.lower(),
        )
    )
    return matches[:limit]


def insert_mention(text: str, trigger: MentionTrigger, username: str) -> tuple[str, int]:
    """Replace the trigger span with ``@username `` and return the new text and caret."""

    before = text[: trigger.start]
    after = text[trigger.end :]
    inserted = f"@{username} "
    return before + inserted + after, len(before) + len(inserted)


def extract_mentions(text: str, members: Sequence[MemberRead]) -> list[MentionData]:
    """
    Resolve every ``@word`` in ``text`` against the member list.

    Unknown usernames are dropped. Repeated mentions of the same member each
    produce an entry.
    """
    by_name: dict[str, MemberRead] = {}
    for member in members:
        by_name.setdefault(member.username.lower(), member)

    mentions: list[MentionData] = []
    for match in MENTION_PATTERN.finditer(text):
        member = by_name.get(match.group(1).lower())
        if member is not None:
            mentions.append(MentionData(user_id=member.id, username=member.username))
    return mentions


def mentions_user(text: str, username: str | None) -> bool:
    if not username:
        return False
    return f"@{username}" in text


def split_mentions(text: str) -> list[ContentSegment]:
    """Split message content into plain text and mention segments for rendering."""

    segments: list[ContentSegment] = []
    position = 0
    for match in MENTION_PATTERN.finditer(text):
        if match.start() > position:
            segments.append(ContentSegment(text=text[position : match.start()]))
        segments.append(ContentSegment(text=match.group(0), username=match.group(1)))
        position = match.end()
    if position < len(text):
        segments.append(ContentSegment(text=text[position:]))
    return segments


class MentionComposer:
    """Tracks the mention picker for one compose box.

    The composer is idle until the caret follows an ``@`` with no whitespace in
    between. While composing, ``candidates`` holds the filtered page and
    ``selected`` the highlighted index, which is clamped at both ends.
    """

    def __init__(self, members: Sequence[MemberRead] = (), *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.members: list[MemberRead] = list(members)
        self.page_size = page_size
        self.text = ""
        self.caret = 0
        self.trigger: MentionTrigger | None = None
        self.candidates: list[MemberRead] = []
        self.selected = 0

    @property
    def composing(self) -> bool:
        return self.trigger is not None

    @property
    def term(self) -> str | None:
        return self.trigger.term if self.trigger is not None else None

    def set_members(self, members: Sequence[MemberRead]) -> None:
        self.members = list(members)
        self._refresh()

    def update(self, text: str, caret: int | None = None) -> None:
        """Rescan after a keystroke."""

        self.text = text
        self.caret = len(text) if caret is None else max(0, min(caret, len(text)))
        self._refresh()

    def _refresh(self) -> None:
        previous = self.term
        self.trigger = find_mention_trigger(self.text, self.caret)
        if self.trigger is None:
            self.candidates = []
            self.selected = 0
            return
        self.candidates = filter_candidates(self.members, self.trigger.term, self.page_size)
        if self.trigger.term != previous:
            self.selected = 0
        else:
            self.selected = min(self.selected, max(len(self.candidates) - 1, 0))

    def move_down(self) -> None:
        if self.candidates:
            self.selected = min(self.selected + 1, len(self.candidates) - 1)

    def move_up(self) -> None:
        if self.candidates:
            self.selected = max(self.selected - 1, 0)

    def select(self, member: MemberRead) -> str:
        """Insert ``member`` at the trigger and return to idle."""

        if self.trigger is None:
            return self.text
        self.text, self.caret = insert_mention(self.text, self.trigger, member.username)
        self.close()
        return self.text

    def commit(self) -> str | None:
        """Enter/Tab: insert the highlighted candidate. Returns ``None`` when nothing was inserted."""

        if self.trigger is None or not self.candidates:
            return None
        return self.select(self.candidates[self.selected])

    def close(self) -> None:
        """Escape: leave the text untouched and return to idle."""

        self.trigger = None
        self.candidates = []
        self.selected = 0
