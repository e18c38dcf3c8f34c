"""Cooperative cancellation for seeding passes.

A pass stops between keys, never halfway through one: the seeder calls
:func:`check_cancelled` before fetching each key, so whatever it hands
back is complete for the keys it reached. The CLI creates a token per
run and sets it from its SIGINT handler.

Tokens live in a :class:`~contextvars.ContextVar`. Pool threads start
with an empty context, so the pipeline wraps each job in
:func:`use_token`::

    token = current_token()

    def job(collection):
        with use_token(token):
            return process_collection(...)

    pool.map(job, collections)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

logger = logging.getLogger(__name__)


class Cancelled(Exception):
    """The run's cancellation token was set."""


_token: ContextVar[threading.Event | None] = ContextVar("bibstash_cancel_token", default=None)


def new_token() -> threading.Event:
    """Start a run: install and return an unset token."""
    token = threading.Event()
    _token.set(token)
    return token


def clear_token() -> None:
    _token.set(None)


def current_token() -> threading.Event | None:
    return _token.get()


@contextmanager
def use_token(token: threading.Event | None) -> Iterator[None]:
    """Make *token* current inside the block, restoring the previous one after."""
    reset = _token.set(token)
    try:
        yield
    finally:
        _token.reset(reset)


def is_cancelled() -> bool:
    token = _token.get()
    return bool(token and token.is_set())


def check_cancelled(where: str = "") -> None:
    """Raise :class:`Cancelled` once the current token is set.

    *where* names the interrupted step in the message, e.g. ``"seeding works"``.
    """
    if not is_cancelled():
        return
    msg = f"Pass cancelled while {where}" if where else "Pass cancelled"
    logger.warning(msg)
    raise Cancelled(msg)
