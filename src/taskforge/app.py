"""Command line entry point for running agents."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.agents.templates import AgentTemplateRegistry, TemplateError, default_templates
from .ai.client import AIClient, ModelStream
from .ai.orchestration.agent_loop import AgentRuntime
from .ai.orchestration.agent_step import StepCallbacks
from .ai.orchestration.cancellation import CancellationToken
from .ai.orchestration.run_controller import RetryAttempt, RunController, RunOptions
from .ai.orchestration.types import RunState
from .services.settings import Settings, SettingsStore, active_env_overrides, redact_secret
from .services.workspace import LocalWorkspace
from .utils import logging as logging_utils

__all__ = ["main", "build_runtime", "load_settings", "configure_logging"]

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO, *, force: bool = False) -> None:
    log_path = logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging to %s (level=%s)", log_path, logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except Exception as exc:  # pragma: no cover - unreadable settings fall back to defaults
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_runtime(
    settings: Settings,
    *,
    agents_dir: Path | None = None,
    workspace: Path | None = None,
    model: ModelStream | None = None,
) -> AgentRuntime:
    """Assemble the runtime used by the CLI from settings."""

    templates: AgentTemplateRegistry = default_templates()
    directory = agents_dir or (Path(settings.agents_path) if settings.agents_path else None)
    if directory is not None:
        templates.load_directory(directory)
    return AgentRuntime(
        model=model or AIClient(settings.client_settings()),
        templates=templates,
        resource_store=LocalWorkspace(workspace or Path.cwd()),
        max_agent_steps=settings.max_agent_steps,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `taskforge` console script."""

    args = _parse_cli_args(argv)

    settings_path = args.settings_path or os.environ.get("TASKFORGE_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    configure_logging(logging_utils.resolve_level(settings.log_level, debug=args.debug or settings.debug_logging))

    if args.command == "settings":
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    try:
        runtime = build_runtime(
            settings,
            agents_dir=Path(args.agents_dir).expanduser() if args.agents_dir else None,
            workspace=Path(args.workspace).expanduser() if args.workspace else None,
        )
    except TemplateError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    try:
        run_state = asyncio.run(_run_command(args, settings, runtime))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130

    _write_run_state(run_state, args.output)
    return 1 if run_state.output.is_error else 0


async def _run_command(args: argparse.Namespace, settings: Settings, runtime: AgentRuntime) -> RunState:
    cancellation = CancellationToken()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, cancellation.cancel)

    options = RunOptions(
        agent=args.agent,
        prompt=args.prompt,
        params=_parse_params(args.params),
        previous_run=_read_previous_run(args.state),
        retry=settings.retry_policy(),
        cancellation=cancellation,
        on_retry=_report_retry,
        callbacks=StepCallbacks(on_text=_echo) if args.stream else None,
    )
    controller = RunController(runtime)
    try:
        if args.command == "best-of-n":
            run_state, _ = await controller.run_best_of_n(
                options,
                selector=args.selector,
                n=args.n if args.n is not None else settings.best_of_n_default,
                min_n=settings.best_of_n_min,
                max_n=settings.best_of_n_max,
            )
            return run_state
        return await controller.run(options)
    finally:
        close = getattr(runtime.model, "aclose", None)
        if close is not None:
            await close()


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="taskforge",
        description="Run an agent against a workspace and print the resulting run state as JSON.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.taskforge/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this invocation (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")

    commands = parser.add_subparsers(dest="command", required=True)
    run_parser = commands.add_parser("run", help="Run one agent turn.")
    _add_run_arguments(run_parser)

    fan_out = commands.add_parser("best-of-n", help="Run N instances of an agent and keep the selected one.")
    _add_run_arguments(fan_out)
    fan_out.add_argument("--selector", default="selector", help="Agent type that picks the winner.")
    fan_out.add_argument("-n", type=int, default=None, help="Number of instances (clamped to the configured range).")

    commands.add_parser("settings", help="Print the effective settings (with secrets redacted) and exit.")
    return parser.parse_args(argv)


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--agent", default="base", help="Agent type to run.")
    parser.add_argument("--prompt", required=True, help="User prompt for the turn.")
    parser.add_argument("--params", metavar="JSON", help="Structured params passed to the agent.")
    parser.add_argument("--state", metavar="PATH", help="Continue from a run state written by a previous run.")
    parser.add_argument("--output", metavar="PATH", help="Write the run state here instead of stdout.")
    parser.add_argument("--agents-dir", metavar="DIR", help="Directory of agent template files.")
    parser.add_argument("--workspace", metavar="DIR", help="Workspace root for file tools (default: cwd).")
    parser.add_argument("--stream", action="store_true", help="Echo streamed model text to stderr.")


def _parse_params(raw: str | None) -> Dict[str, Any] | None:
    if not raw:
        return None
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise SystemExit("--params must be a JSON object")
    return payload


def _read_previous_run(path: str | None) -> RunState | None:
    if not path:
        return None
    return RunState.from_json(Path(path).expanduser().read_text(encoding="utf-8"))


def _write_run_state(run_state: RunState, path: str | None) -> None:
    body = run_state.to_json()
    if path:
        target = Path(path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(body + "\n", encoding="utf-8")
        return
    sys.stdout.write(body + "\n")


def _echo(text: str) -> None:
    sys.stderr.write(text)
    sys.stderr.flush()


def _report_retry(attempt: RetryAttempt) -> None:
    print(
        f"Attempt {attempt.attempt} failed ({attempt.error_code}): {attempt.error_message}. "
        f"Retrying in {attempt.delay:.1f}s",
        file=sys.stderr,
    )


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if normalized.lower() in {"none", "null"} and target is not str:
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")
