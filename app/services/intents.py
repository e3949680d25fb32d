"""Classify free-text chat messages into conversation intents."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal

from ..models import ConversationState, MediaType

logger = logging.getLogger(__name__)

IntentKind = Literal[
    "media_request",
    "selection",
    "confirmation",
    "cancel",
    "season_selection",
    "unknown",
]

MOVIE_KEYWORDS: tuple[str, ...] = (
    "movie",
    "film",
    "watch",
    "find",
    "search",
    "looking for",
    "want to see",
    "want to watch",
    "add movie",
    "get movie",
    "download movie",
)

SERIES_KEYWORDS: tuple[str, ...] = (
    "series",
    "show",
    "tv",
    "tv show",
    "television",
    "episode",
    "season",
    "add series",
    "add show",
    "get series",
    "get show",
    "download series",
    "download show",
)

CANCEL_KEYWORDS: tuple[str, ...] = (
    "cancel",
    "stop",
    "no",
    "nevermind",
    "never mind",
    "quit",
    "exit",
)

CONFIRM_KEYWORDS: tuple[str, ...] = (
    "yes",
    "yeah",
    "yep",
    "sure",
    "ok",
    "okay",
    "confirm",
    "correct",
    "right",
    "yup",
)

FILLER_PHRASES: tuple[str, ...] = (
    "i want to watch",
    "i want to see",
    "i want",
    "looking for",
    "search for",
    "find",
    "add",
    "get",
    "download",
    "watch",
    "see",
)

WORD_NUMBERS: dict[str, int] = {
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
    "thirteen": 13,
    "fourteen": 14,
    "fifteen": 15,
    "sixteen": 16,
    "seventeen": 17,
    "eighteen": 18,
    "nineteen": 19,
    "twenty": 20,
}


def _word_pattern(phrases: tuple[str, ...]) -> re.Pattern[str]:
    # Longest first so "tv show" is consumed before "tv".
    ordered = sorted(phrases, key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(re.escape(p) for p in ordered) + r")\b", re.IGNORECASE)


_CANCEL_RE = _word_pattern(CANCEL_KEYWORDS)
_CONFIRM_RE = _word_pattern(CONFIRM_KEYWORDS)
_MOVIE_RE = _word_pattern(MOVIE_KEYWORDS)
_SERIES_RE = _word_pattern(SERIES_KEYWORDS)
_STRIP_RES = tuple(
    re.compile(rf"\b{re.escape(phrase)}\b", re.IGNORECASE)
    for phrase in (*FILLER_PHRASES, *MOVIE_KEYWORDS, *SERIES_KEYWORDS)
)
_SELECTION_RE = re.compile(r"^\s*(\d{1,2})\s*$")
_SEASON_LIST_RE = re.compile(r"^\s*(\d+\s*(?:,\s*\d+\s*)*)\s*$")
_EDGE_PUNCTUATION_RE = re.compile(r"^[^\w]+|[^\w]+$")
_WHITESPACE_RE = re.compile(r"\s+")
_YEAR_IN_PARENS_RE = re.compile(r"^(.+?)\s*\((\d{4})\)\s*$")
_YEAR_AT_END_RE = re.compile(r"^(.+?)\s+(\d{4})\s*$")


@dataclass(slots=True)
class Intent:
    kind: IntentKind
    media_type: MediaType | None = None
    query: str | None = None
    selection: int | None = None
    confirmed: bool | None = None
    seasons: list[int] | Literal["all"] | None = None


class IntentParser:
    """Rule-based classifier for requester messages.

    Precedence is cancel, then season choice (only while seasons are being
    picked), then a numeric selection, then yes/no keywords and finally a
    media request. "no" is a cancel keyword, so it never reaches the
    confirmation rule.
    """

    def parse(
        self, message: str, current_state: ConversationState | str | None = None
    ) -> Intent:
        text = (message or "").strip().lower()

        if _CANCEL_RE.search(text):
            return Intent(kind="cancel")

        state = current_state.value if isinstance(current_state, ConversationState) else current_state
        if state == ConversationState.AWAITING_SEASON_SELECTION.value:
            seasons = self.parse_season_selection(text)
            if seasons is not None:
                return Intent(kind="season_selection", seasons=seasons)

        selection = self.parse_selection(text)
        if selection is not None:
            return Intent(kind="selection", selection=selection)

        if _CONFIRM_RE.search(text):
            return Intent(kind="confirmation", confirmed=True)

        request = self._parse_media_request(text)
        if request is not None:
            media_type, query = request
            logger.debug("Parsed media request %r as %s", query, media_type)
            return Intent(kind="media_request", media_type=media_type, query=query)

        return Intent(kind="unknown")

    @staticmethod
    def parse_selection(text: str) -> int | None:
        match = _SELECTION_RE.match(text)
        if match:
            number = int(match.group(1))
            return number if 1 <= number <= 99 else None
        return WORD_NUMBERS.get(text.strip())

    @staticmethod
    def parse_season_selection(text: str) -> list[int] | Literal["all"] | None:
        """Parse ``all``, ``3`` or ``1, 2, 5`` into a season choice."""

        if text.strip() == "all":
            return "all"
        match = _SEASON_LIST_RE.match(text)
        if not match:
            return None
        numbers = {int(part) for part in match.group(1).split(",") if part.strip()}
        seasons = sorted(number for number in numbers if number > 0)
        return seasons or None

    @staticmethod
    def _parse_media_request(text: str) -> tuple[MediaType, str] | None:
        has_movie = bool(_MOVIE_RE.search(text))
        has_series = bool(_SERIES_RE.search(text))

        media_type: MediaType | None = None
        if has_series and not has_movie:
            media_type = "series"
        elif has_movie and not has_series:
            media_type = "movie"
        elif len(text) > 2 and not text.isdigit():
            media_type = "both"
        if media_type is None:
            return None

        query = text
        for pattern in _STRIP_RES:
            query = pattern.sub("", query)
        query = _WHITESPACE_RE.sub(" ", query.strip())
        query = _EDGE_PUNCTUATION_RE.sub("", query)
        if len(query) < 2:
            return None
        return media_type, query


def extract_title(query: str) -> tuple[str, int | None]:
    """Split a trailing release year off ``query``."""

    for pattern in (_YEAR_IN_PARENS_RE, _YEAR_AT_END_RE):
        match = pattern.match(query)
        if match:
            return match.group(1).strip(), int(match.group(2))
    return query.strip(), None
