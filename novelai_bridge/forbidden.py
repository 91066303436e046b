"""Forbidden-term denylist: parsing and matching."""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Tuple

logger = logging.getLogger(__name__)

_SEPARATOR = re.compile(r",\s*|\s*\n\s*")
_NOT_PATTERN_CHAR = re.compile(r"[^a-z0-9\u00ff-\uffff:]+")
_ASCII_NON_ALNUM = re.compile(r"[\x00-\x2f\x3a-\x40\x5b-\x60\x7b-\x7f]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ForbiddenRule:
    pattern: str
    strict: bool

    def matches(self, folded: str) -> bool:
        """Test an already folded term (see `fold_term`)."""
        if self.strict:
            return f" {self.pattern} " in f" {folded} "
        return self.pattern in folded


def parse_forbidden(text: str) -> Tuple[ForbiddenRule, ...]:
    """Compile denylist text into rules.

    Entries are separated by commas or newlines. A trailing ``!`` marks a
    strict (whole-token) rule.
    """
    text = (text or "").strip().lower().replace("，", ",").replace("！", "!")
    rules = []
    for entry in _SEPARATOR.split(text):
        entry = entry.strip()
        if not entry:
            continue
        strict = entry.endswith("!")
        if strict:
            entry = entry[:-1]
        pattern = _NOT_PATTERN_CHAR.sub(" ", entry).strip()
        if pattern:
            rules.append(ForbiddenRule(pattern, strict))
    return tuple(rules)


def fold_term(term: str) -> str:
    """Fold a prompt term for matching only.

    ASCII punctuation becomes whitespace; non-ASCII runs are kept so that
    CJK denylist entries still match.
    """
    term = _ASCII_NON_ALNUM.sub(" ", term.lower())
    return _WHITESPACE.sub(" ", term).strip()


def is_forbidden(term: str, rules: Iterable[ForbiddenRule]) -> bool:
    folded = fold_term(term)
    return any(rule.matches(folded) for rule in rules)


class ForbiddenRuleSet:
    """Compiled rules for the current FORBIDDEN setting.

    `rules` is swapped as one tuple, so a normalization that already read it
    keeps the old set until it finishes.
    """

    def __init__(self, text: str = ""):
        self.source = None
        self.rules: Tuple[ForbiddenRule, ...] = ()
        self.update(text)

    def update(self, text: str) -> bool:
        if text == self.source:
            return False
        rules = parse_forbidden(text)
        self.source = text
        self.rules = rules
        logger.info(f"[Forbidden] Compiled {len(rules)} rules ({sum(r.strict for r in rules)} strict)")
        return True
