"""Suggest dictionary entries from user edits to a transcript.

Only two edit shapes produce a suggestion: a single changed word, or a short
phrase collapsing into one word ("tally dot io" -> "tallie.io"). Anything
else is ignored, since an accepted suggestion rewrites every later
transcript.
"""

from __future__ import annotations

import logging
from typing import Iterable

from openwispr.store import DictionaryEntry, DictionaryStore
from openwispr.types import CorrectionSuggestion

logger = logging.getLogger(__name__)

MAX_TOKEN_COUNT_DELTA = 2


def _single_word_change(original: list[str], edited: list[str]) -> tuple[str, str] | None:
    changes = [(a, b) for a, b in zip(original, edited) if a.lower() != b.lower()]
    if len(changes) != 1:
        return None
    return changes[0]


def _phrase_to_word_change(original: list[str], edited: list[str]) -> tuple[str, str] | None:
    original_lower = {token.lower() for token in original}
    edited_lower = {token.lower() for token in edited}
    removed = [token for token in original if token.lower() not in edited_lower]
    added = [token for token in edited if token.lower() not in original_lower]
    if not removed or len(added) != 1:
        return None
    return " ".join(removed), added[0]


def detect_correction(
    original: str,
    edited: str,
    existing: Iterable[DictionaryEntry] = (),
) -> CorrectionSuggestion | None:
    """Return one ``{original, corrected}`` candidate, or None."""
    if not original or not edited or original == edited:
        return None

    original_tokens = original.split()
    edited_tokens = edited.split()

    if len(original_tokens) == len(edited_tokens):
        candidate = _single_word_change(original_tokens, edited_tokens)
    elif abs(len(original_tokens) - len(edited_tokens)) <= MAX_TOKEN_COUNT_DELTA:
        candidate = _phrase_to_word_change(original_tokens, edited_tokens)
    else:
        candidate = None

    if candidate is None:
        return None

    source, target = candidate
    if source.lower() == target.lower():
        return None

    for entry in existing:
        if entry.original.lower() == source.lower() and entry.corrected.lower() == target.lower():
            logger.debug("Suggestion %r -> %r already in dictionary", source, target)
            return None

    return {"original": source, "corrected": target}


class CorrectionDetector:
    """Binds ``detect_correction`` to the live dictionary."""

    def __init__(self, dictionary: DictionaryStore) -> None:
        self._dictionary = dictionary

    def suggest(self, original: str, edited: str) -> CorrectionSuggestion | None:
        suggestion = detect_correction(original, edited, self._dictionary.list())
        if suggestion is not None:
            logger.info("Suggesting %r -> %r", suggestion["original"], suggestion["corrected"])
        return suggestion

    def accept(self, suggestion: CorrectionSuggestion) -> DictionaryEntry:
        """Acceptance is an explicit user action that creates the entry.

        An enabled entry for the same original is retargeted instead, since
        only one enabled entry may exist per original.
        """
        candidate = DictionaryEntry(
            id="", original=suggestion["original"].strip(), corrected=suggestion["corrected"]
        )
        for entry in self._dictionary.enabled():
            if entry.same_original(candidate):
                logger.info("Retargeting %r -> %r", entry.original, suggestion["corrected"])
                return self._dictionary.update(entry.id, corrected=suggestion["corrected"])
        return self._dictionary.add(suggestion["original"], suggestion["corrected"])
