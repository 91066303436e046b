"""Prompt normalization.

Turns free-form user text into the ordered, de-duplicated tag lists sent to
the backends:

1. fold full-width punctuation and convert emphasis brackets for the active
   backend family (sd-webui uses ``()``, NovelAI-style backends use ``{}``);
2. reject non-latin input when LATIN_ONLY is set;
3. split off a trailing negative segment (``-u``, ``--undesired``,
   ``negative prompt:``);
4. drop forbidden terms, enforce MAX_WORDS;
5. append the configured base / negative / default prompts.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .errors import SanitationError
from .forbidden import ForbiddenRule, fold_term, is_forbidden

logger = logging.getLogger(__name__)

BACKSLASH_MASK = "@@__BACKSLASH__@@"

_FULLWIDTH = str.maketrans({"，": ",", "（": "(", "）": ")", "《": "<", "》": ">"})
_TAG_SPLIT = re.compile(r",\s*")
_NON_LATIN = re.compile(r"[^\s\w\"'“”‘’.,:|\\()\[\]{}<>-]", re.ASCII)
_NEGATIVE_MARKER = re.compile(
    r"(,\s*|\s+)(-u\s+|--undesired\s+|negative prompts?:\s*)([\s\S]+)",
    re.IGNORECASE,
)
_ANGLE_TAG = re.compile(r"^<.+>$", re.DOTALL)
_WORD = re.compile(r"[a-z0-9]+")

_UNESCAPED = {
    "(": re.compile(r"(?<!\\)\("),
    ")": re.compile(r"(?<!\\)\)"),
    "{": re.compile(r"(?<!\\)\{"),
    "}": re.compile(r"(?<!\\)\}"),
}


@dataclass(frozen=True)
class CanonicalPrompt:
    positive_tags: Tuple[str, ...]
    negative_tags: Tuple[str, ...]
    sanitized_echo: str = ""

    @property
    def prompt(self) -> str:
        return ", ".join(self.positive_tags)

    @property
    def negative_prompt(self) -> str:
        return ", ".join(self.negative_tags)


def convert_brackets(text: str, webui: bool) -> str:
    """Rewrite unescaped emphasis brackets into the backend's own family."""
    if webui:
        pairs = (("{", "("), ("}", ")"))
    else:
        pairs = (("(", "{"), (")", "}"))
    for source, target in pairs:
        text = _UNESCAPED[source].sub(target, text)
    return text


def fold_input(text: str, webui: bool) -> str:
    text = text.replace("\\\\", BACKSLASH_MASK).translate(_FULLWIDTH)
    text = convert_brackets(text, webui)
    return text.replace(BACKSLASH_MASK, "\\").replace("_", " ")


def count_words(tags: Iterable[str]) -> int:
    return len(_WORD.findall(" ".join(tags).lower()))


def _split_tags(text: Optional[str]) -> List[str]:
    return [tag.strip() for tag in _TAG_SPLIT.split(text or "") if tag.strip()]


class TagList:
    """Ordered tag list that never holds the same tag twice."""

    def __init__(self, placement: str = "after", lower_case: bool = True):
        self.placement = placement
        self.lower_case = lower_case
        self.tags: List[str] = []

    def add(self, tag: str) -> None:
        if tag and tag not in self.tags:
            self.tags.append(tag)

    def extend(self, text: Optional[str]) -> None:
        tags = _TAG_SPLIT.split(text or "")
        before = self.placement == "before"
        if before:
            tags.reverse()
        for tag in tags:
            tag = tag.strip()
            if self.lower_case:
                tag = tag.lower()
            if not tag or tag in self.tags:
                continue
            if before:
                self.tags.insert(0, tag)
            else:
                self.tags.append(tag)


def normalize_prompt(
    raw: Optional[str],
    config,
    rules: Iterable[ForbiddenRule] = (),
    override: bool = False,
) -> CanonicalPrompt:
    """Normalize user input into a CanonicalPrompt.

    Raises SanitationError (``.latin-only`` / ``.too-many-words``).
    """
    if not raw or not raw.strip():
        positive = _split_tags(config.BASE_PROMPT) + _split_tags(config.DEFAULT_PROMPT)
        return CanonicalPrompt(tuple(positive), tuple(_split_tags(config.NEGATIVE_PROMPT)))

    text = fold_input(raw, webui=config.TYPE == "sd-webui")

    if config.LATIN_ONLY and _NON_LATIN.search(text):
        raise SanitationError(".latin-only")

    negative = TagList(config.PLACEMENT, config.LOWER_CASE)
    capture = _NEGATIVE_MARKER.search(text)
    if capture and capture.group(3):
        text = text[:capture.start()].strip()
        negative.extend(capture.group(3))

    positive = TagList(config.PLACEMENT, config.LOWER_CASE)
    dropped = 0
    for term in _TAG_SPLIT.split(text):
        term = term.strip()
        if not fold_term(term):
            continue
        if is_forbidden(term, rules):
            dropped += 1
            continue
        if _ANGLE_TAG.match(term):
            term = term.replace(" ", "_")
        elif config.LOWER_CASE:
            term = term.lower()
        positive.add(term)
    if dropped:
        logger.info(f"[Prompt] Dropped {dropped} forbidden terms")

    max_words = config.MAX_WORDS or 0
    if max_words and max(count_words(positive.tags), count_words(negative.tags)) > max_words:
        raise SanitationError(".too-many-words")

    sanitized = ",".join(positive.tags)
    if not override:
        positive.extend(config.BASE_PROMPT)
        negative.extend(config.NEGATIVE_PROMPT)
        if config.DEFAULT_PROMPT_SW:
            positive.extend(config.DEFAULT_PROMPT)

    return CanonicalPrompt(tuple(positive.tags), tuple(negative.tags), sanitized)
