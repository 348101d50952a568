"""Keyword-based topic filters applied to text before it reaches the backend."""
import re
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from .constants import ALLOWED_TOPIC_MODES, TOPIC_MODE_SUBSTRING, TOPIC_MODE_WORD

_WORD_SPLIT = re.compile(r"[\W_]+", re.UNICODE)


def parse_keywords(raw: str) -> List[str]:
    """Split a comma-separated keyword list, dropping blanks and duplicates."""
    keywords: List[str] = []
    seen: set[str] = set()
    for item in (raw or "").split(","):
        keyword = item.strip().lower()
        if keyword and keyword not in seen:
            keywords.append(keyword)
            seen.add(keyword)
    return keywords


class TopicFilter(ABC):
    """Stateless keyword gate. Subclasses decide what counts as a match."""

    mode = ""

    def __init__(self, keywords: Iterable[str]):
        self.keywords = [k.strip().lower() for k in keywords if k and k.strip()]
        if not self.keywords:
            raise ValueError("A topic filter needs at least one keyword")

    @abstractmethod
    def matches(self, text: str) -> bool:
        """Return True when ``text`` is on topic."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.keywords!r})"


class SubstringTopicFilter(TopicFilter):
    """Passes when any keyword appears anywhere in the text, ignoring case.

    With a single keyword this is the classic "does the message mention
    mazda" check; with several it is an OR over all of them.
    """

    mode = TOPIC_MODE_SUBSTRING

    def matches(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(keyword in lowered for keyword in self.keywords)


class WordTopicFilter(TopicFilter):
    """Passes when one of the words in the text is exactly a keyword."""

    mode = TOPIC_MODE_WORD

    def matches(self, text: str) -> bool:
        words = {w for w in _WORD_SPLIT.split((text or "").lower()) if w}
        return any(keyword in words for keyword in self.keywords)


_FILTERS = {
    TOPIC_MODE_SUBSTRING: SubstringTopicFilter,
    TOPIC_MODE_WORD: WordTopicFilter,
}


def build_topic_filter(keywords: Iterable[str], mode: str = TOPIC_MODE_SUBSTRING) -> Optional[TopicFilter]:
    """Build the filter for ``mode``, or None when no keywords are configured."""
    keywords = list(keywords)
    if not keywords:
        return None
    if mode not in _FILTERS:
        raise ValueError(
            f"Unknown topic match mode: {mode}. Expected one of {ALLOWED_TOPIC_MODES}"
        )
    return _FILTERS[mode](keywords)
