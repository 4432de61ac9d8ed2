"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from logging import Handler
from typing import Literal

import loguru
from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "cli"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "cli": "{level} | {extra[run_id]} | {message}",
    "default": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {extra[run_id]} | {message}",
}
_CONFIGURED_PROFILE: LogProfile | None = None
_current_run_id: ContextVar[str] = ContextVar("baton_run_id", default="-")


def current_run_id() -> str:
    return _current_run_id.get()


@contextmanager
def bind_run_id(run_id: str) -> Iterator[None]:
    """Expose run_id to every log record emitted in this context."""
    token = _current_run_id.set(run_id)
    try:
        yield
    finally:
        _current_run_id.reset(token)


def _inject_context(record: loguru.Record) -> None:
    record["extra"].setdefault("run_id", current_run_id())


def _build_cli_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Configure process-level logging once."""
    global _CONFIGURED_PROFILE
    if profile == _CONFIGURED_PROFILE:
        return

    resolved_level = (level or os.getenv("BATON_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    logger.configure(patcher=_inject_context)
    if profile == "cli":
        logger.add(
            _build_cli_handler(),
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    _CONFIGURED_PROFILE = profile
