"""Outbound side effects (mail, follow-up notifications).

Side effects are never part of the transaction that triggered them: each one
runs behind ``run_side_effect`` which logs and counts failures instead of
raising. Inside a request they are queued on FastAPI ``BackgroundTasks`` and
run after the response is sent; elsewhere they run inline.
"""
import logging
from collections.abc import Callable
from typing import Any, Protocol

from fastapi import BackgroundTasks

from campus.core.metrics import increment_counter

logger = logging.getLogger(__name__)


def run_side_effect(name: str, fn: Callable[..., Any], *args, **kwargs) -> None:
    try:
        result = fn(*args, **kwargs)
    except Exception:
        increment_counter("side_effect_total", effect=name, result="failed")
        logger.exception("side_effect_failed name=%s", name)
        return
    if result is False:
        increment_counter("side_effect_total", effect=name, result="not_delivered")
        logger.warning("side_effect_not_delivered name=%s", name)
        return
    increment_counter("side_effect_total", effect=name, result="ok")


class Dispatcher(Protocol):
    def dispatch(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> None: ...


class InlineDispatcher:
    def dispatch(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        run_side_effect(name, fn, *args, **kwargs)


class BackgroundDispatcher:
    def __init__(self, background_tasks: BackgroundTasks):
        self._tasks = background_tasks

    def dispatch(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        self._tasks.add_task(run_side_effect, name, fn, *args, **kwargs)


def get_dispatcher(background_tasks: BackgroundTasks) -> Dispatcher:
    return BackgroundDispatcher(background_tasks)
