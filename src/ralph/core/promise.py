"""Completion-phrase detection."""

from __future__ import annotations

PROMISE_OPEN_TAG = "<promise>"
PROMISE_CLOSE_TAG = "</promise>"


def tag_promise(phrase: str) -> str:
    return f"{PROMISE_OPEN_TAG}{phrase}{PROMISE_CLOSE_TAG}"


def detect_promise(text: str, phrase: str) -> bool:
    """Return true when ``text`` contains the phrase wrapped in promise tags.

    Matching is exact: case, punctuation, and internal whitespace must all be
    identical. An empty phrase never matches.
    """
    if not phrase or not text:
        return False
    return tag_promise(phrase) in text
