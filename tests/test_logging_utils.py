from loguru import logger

from baton import logging_utils
from baton.logging_utils import bind_run_id, configure_logging, current_run_id


def test_bind_run_id_is_scoped() -> None:
    assert current_run_id() == "-"
    with bind_run_id("run-1"):
        assert current_run_id() == "run-1"
        with bind_run_id("run-2"):
            assert current_run_id() == "run-2"
        assert current_run_id() == "run-1"
    assert current_run_id() == "-"


def test_configure_logging_injects_run_id(monkeypatch) -> None:
    monkeypatch.setattr(logging_utils, "_CONFIGURED_PROFILE", None)
    configure_logging(profile="default", level="DEBUG")

    seen: list[str] = []
    handler_id = logger.add(lambda message: seen.append(message.record["extra"]["run_id"]), format="{message}")
    try:
        with bind_run_id("abc123"):
            logger.info("runner.start")
        logger.info("outside")
    finally:
        logger.remove(handler_id)

    assert seen == ["abc123", "-"]


def test_configure_logging_is_idempotent_per_profile(monkeypatch) -> None:
    monkeypatch.setattr(logging_utils, "_CONFIGURED_PROFILE", None)
    removed: list[object] = []
    configure_logging(profile="cli")
    monkeypatch.setattr(logger, "remove", lambda *args: removed.append(args))
    configure_logging(profile="cli")
    assert removed == []
