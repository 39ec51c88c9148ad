"""Tests for the logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from taskforge.ai.orchestration.agent_loop import AgentRuntime
from taskforge.ai.orchestration.cancellation import CancellationToken
from taskforge.ai.orchestration.types import AgentState
from taskforge.utils import logging as logging_utils
from tests.helpers import ScriptedModel, text_chunks


@pytest.fixture(autouse=True)
def _restore_root_logger(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    try:
        yield
    finally:
        for handler in list(root.handlers):
            if handler not in handlers:
                root.removeHandler(handler)
                handler.close()
        for handler in handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(level)
        logging.captureWarnings(False)


def _flush() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


class _Recorder(logging.Handler):
    def __init__(self) -> None:
        super().__init__(logging.DEBUG)
        self.addFilter(logging_utils.RunContextFilter())
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


# =============================================================================
# Setup
# =============================================================================


def test_setup_logging_writes_tagged_lines(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False)

    logging.getLogger("taskforge.tests").info("outside any agent")
    with logging_utils.agent_context("run-1", "base"):
        logging.getLogger("taskforge.tests").info("inside an agent")
    _flush()

    text = log_path.read_text(encoding="utf-8")
    assert log_path == tmp_path / "taskforge.log"
    assert "| - - | taskforge.tests | outside any agent" in text
    assert "| run-1 base | taskforge.tests | inside an agent" in text
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_is_idempotent_unless_forced(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False)
    second = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)
    forced = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False, force=True)

    assert second == first
    assert forced == tmp_path / "b" / "taskforge.log"


def test_log_dir_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKFORGE_LOG_DIR", str(tmp_path / "env-logs"))

    log_path = logging_utils.setup_logging(console=False)

    assert log_path.parent == tmp_path / "env-logs"


# =============================================================================
# Agent context
# =============================================================================


def test_nested_context_is_restored() -> None:
    with logging_utils.agent_context("parent", "base"):
        with logging_utils.agent_context("child", "file_picker"):
            assert logging_utils.current_agent() == ("child", "file_picker")
        assert logging_utils.current_agent() == ("parent", "base")
    assert logging_utils.current_agent() is None


def test_explicit_extra_wins_over_context() -> None:
    recorder = _Recorder()
    logger = logging.getLogger("taskforge.tests.extra")
    logger.addHandler(recorder)
    logger.setLevel(logging.DEBUG)
    try:
        with logging_utils.agent_context("run-1", "base"):
            logger.debug("tagged by caller", extra={"run_id": "other"})
    finally:
        logger.removeHandler(recorder)

    record = recorder.records[0]
    assert (record.run_id, record.agent_type) == ("other", "base")


@pytest.mark.asyncio
async def test_agent_runs_tag_their_records() -> None:
    recorder = _Recorder()
    logger = logging.getLogger("taskforge.ai")
    previous = logger.level
    logger.addHandler(recorder)
    logger.setLevel(logging.DEBUG)
    state = AgentState(agent_type="base")
    try:
        await AgentRuntime(model=ScriptedModel([text_chunks("done")])).run_agent(
            state, prompt="go", cancellation=CancellationToken()
        )
    finally:
        logger.removeHandler(recorder)
        logger.setLevel(previous)

    assert recorder.records
    assert {(record.run_id, record.agent_type) for record in recorder.records} == {(state.run_id, "base")}


# =============================================================================
# Levels
# =============================================================================


@pytest.mark.parametrize(
    ("value", "debug", "expected"),
    [
        (None, False, logging.INFO),
        ("debug", False, logging.DEBUG),
        ("WARNING", False, logging.WARNING),
        (" 15 ", False, 15),
        (40, False, 40),
        ("chatty", False, logging.INFO),
        ("ERROR", True, logging.DEBUG),
    ],
)
def test_resolve_level(value: str | int | None, debug: bool, expected: int) -> None:
    assert logging_utils.resolve_level(value, debug=debug) == expected
