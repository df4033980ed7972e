"""Typed errors raised by the feed pipeline.

Tracker outcomes such as cooldown or a lost lock race are not errors; they
are reported through ``TrackerStatus``. Completion-service failures live in
``autofeed.llm.gateway``.
"""

from __future__ import annotations


class AutofeedError(Exception):
    """Base class for feed pipeline errors."""


class NotFoundError(AutofeedError):
    """An entity vanished or never existed (message, room, card)."""


class InvalidStateError(AutofeedError):
    """An invariant was violated, e.g. messages spanning unrelated rooms."""


class TransientStoreError(AutofeedError):
    """The shared fast store was unreachable after bounded retries."""
