from __future__ import annotations

import argparse
import contextlib
import json
import logging
import sys
import time
from pathlib import Path
from typing import Iterator, Sequence

from rich.console import Console
from rich.table import Table

from runs_manager._logging import setup_logging
from runs_manager.context import ExecutionContext, console_confirmer
from runs_manager.docker import ContainerRuntime
from runs_manager.lookup import (
    RunListing,
    find_container_id,
    list_runs,
    lookup_values,
    parse_field,
)
from runs_manager.models import (
    Aborted,
    ConfigError,
    LookupField,
    MultiConfig,
    NewMethod,
    NewRequest,
    SingleConfig,
    TeardownSummary,
)
from runs_manager.provision import provision
from runs_manager.registry import RunRegistry
from runs_manager.settings import (
    Settings,
    load_settings,
    resolve_db_path,
    resolve_settings_path,
)
from runs_manager.teardown import kill_runs, remove_runs, resolve_pattern
from runs_manager.utils import split_args
from runs_manager.vcs import GitRepository

_cli_log = logging.getLogger("runs_manager.cli")


def _console() -> Console:
    return Console(highlight=False)


def _short_text(value: object, *, width: int = 40) -> str:
    text = " ".join(str(value).split())
    return text if len(text) <= width else f"{text[: max(width - 3, 1)]}..."


@contextlib.contextmanager
def _execution_context(
    args: argparse.Namespace, settings: Settings
) -> Iterator[ExecutionContext]:
    registry = RunRegistry.open(resolve_db_path(args.db, settings))
    console = _console()
    max_workers = getattr(args, "max_workers", None) or settings.max_workers
    try:
        yield ExecutionContext(
            registry=registry,
            runtime=ContainerRuntime(),
            vcs=GitRepository(),
            yes=bool(args.yes),
            confirmer=console_confirmer(console),
            console=console,
            max_workers=max_workers,
        )
    finally:
        registry.close()


def _render_runs_table(listings: list[RunListing]) -> None:
    console = _console()
    table = Table(title="Runs")
    table.add_column("Name", style="bold")
    table.add_column("Live")
    table.add_column("Container")
    table.add_column("Volume")
    table.add_column("Commit")
    table.add_column("Created")
    table.add_column("Description")
    for listing in listings:
        record = listing.record
        table.add_row(
            record.name,
            "[green]yes[/green]" if listing.live else "[dim]no[/dim]",
            record.container_id[:12],
            record.volume,
            record.commit_hash[:10],
            record.datetime.strftime("%Y-%m-%d %H:%M:%S"),
            _short_text(record.description),
        )
    console.print(table)


def _print_teardown(summary: TeardownSummary, output_format: str) -> None:
    if output_format == "json":
        print(json.dumps(summary.to_json(), indent=2, sort_keys=True))
        return
    for failure in summary.failures:
        print(f"[warning] teardown step failed: {failure}", file=sys.stderr)


def _resolve_new_method(args: argparse.Namespace, settings: Settings) -> NewMethod:
    if args.config_script is None:
        if args.interpreter_args is not None or args.num_runs is not None:
            raise ConfigError(
                "--interpreter-args and --num-runs require --config-script"
            )
        return SingleConfig(config=args.config)
    script_path = Path(args.config_script).expanduser().resolve()
    if not script_path.is_file():
        raise ConfigError(f"Config script not found: {script_path}")
    interpreter_args = (
        split_args(args.interpreter_args, label="--interpreter-args")
        if args.interpreter_args is not None
        else settings.interpreter_args
    )
    return MultiConfig(
        script_path=script_path,
        interpreter=args.interpreter or settings.interpreter,
        interpreter_args=interpreter_args,
        count=args.num_runs if args.num_runs is not None else settings.num_runs,
    )


def _build_new_request(args: argparse.Namespace, settings: Settings) -> NewRequest:
    name = args.name.strip()
    if not name:
        raise ConfigError("--name must be non-empty")
    docker_run_args = (
        split_args(args.docker_run_args, label="--docker-run-args")
        if args.docker_run_args is not None
        else settings.docker_run_args
    )
    build_path = Path(args.build_path or settings.build_path).expanduser().resolve()
    dockerfile = Path(args.dockerfile or settings.dockerfile).expanduser()
    if not dockerfile.is_absolute():
        dockerfile = (build_path / dockerfile).resolve()
    if not build_path.is_dir():
        raise ConfigError(f"Image build path is not a directory: {build_path}")
    if not dockerfile.is_file():
        raise ConfigError(f"Dockerfile not found: {dockerfile}")
    return NewRequest(
        name=name,
        image=args.image or settings.image,
        build_path=build_path,
        dockerfile=dockerfile,
        method=_resolve_new_method(args, settings),
        mount_path=args.mount or settings.mount,
        description=args.description,
        docker_run_args=docker_run_args,
        volume=args.volume,
        kill_label=args.kill_label or settings.kill_label,
        follow=bool(args.follow),
    )


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-y",
        "--yes",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Answer yes to every confirmation",
    )

    parser = argparse.ArgumentParser(
        prog="runs", description="Provision and track containerized runs"
    )
    parser.add_argument("--db", default=None, help="Registry path (default: ./runs.db)")
    parser.add_argument(
        "--settings", default=None, help="Settings YAML path (default: ./runs.yaml)"
    )
    parser.add_argument(
        "-y", "--yes", action="store_true", help="Answer yes to every confirmation"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: $RUNS_LOG_LEVEL or WARNING)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_match_args(target: argparse.ArgumentParser) -> None:
        target.add_argument(
            "--pattern",
            default=None,
            help="SQL LIKE pattern on run names (%% and _ are wildcards)",
        )
        target.add_argument(
            "--active",
            action="store_true",
            help="Only runs whose container is currently running",
        )
        target.add_argument(
            "--kill-label",
            default=None,
            help="Only consider running containers with this label",
        )

    new = sub.add_parser("new", parents=[common], help="Launch a batch of runs")
    new.add_argument("--name", required=True, help="Run name (index-suffixed for batches)")
    new.add_argument(
        "--description", default=None, help="Defaults to the last commit message"
    )
    new.add_argument("--image", default=None, help="Image tag to build and run")
    new.add_argument("--build-path", default=None, help="Image build context")
    new.add_argument("--dockerfile", default=None, help="Dockerfile path")
    new.add_argument(
        "--docker-run-args",
        default=None,
        help="Extra arguments for `docker run`, as one quoted string",
    )
    new.add_argument(
        "--volume", default=None, help="Volume name (default: the run name)"
    )
    new.add_argument("--mount", default=None, help="Volume mount path in the container")
    new.add_argument(
        "--kill-label", default=None, help="Label scoping active-container lookups"
    )
    new.add_argument(
        "--follow", action="store_true", help="Follow the first container's logs"
    )
    new.add_argument("--max-workers", type=int, default=None)
    source = new.add_mutually_exclusive_group()
    source.add_argument("--config", default=None, help="Literal config arguments")
    source.add_argument(
        "--config-script", default=None, help="Script whose output is a config"
    )
    new.add_argument("--interpreter", default=None, help="Interpreter for the script")
    new.add_argument(
        "--interpreter-args",
        default=None,
        help="Interpreter arguments placed before the script body",
    )
    new.add_argument(
        "--num-runs", type=int, default=None, help="Configs to sample from the script"
    )
    new.set_defaults(handler=_cmd_new)

    rm = sub.add_parser(
        "rm", parents=[common], help="Kill runs, remove their volumes and rows"
    )
    _add_match_args(rm)
    rm.add_argument("--format", choices=["text", "json"], default="text")
    rm.set_defaults(handler=_cmd_rm)

    kill = sub.add_parser("kill", parents=[common], help="Kill runs, keep their rows")
    _add_match_args(kill)
    kill.add_argument("--format", choices=["text", "json"], default="text")
    kill.set_defaults(handler=_cmd_kill)

    lookup = sub.add_parser("lookup", help="Print one field of matching runs")
    lookup.add_argument(
        "--field",
        required=True,
        choices=[member.value for member in LookupField],
        help="Field to print",
    )
    _add_match_args(lookup)
    lookup.set_defaults(handler=_cmd_lookup)

    ls = sub.add_parser("ls", help="List matching runs")
    _add_match_args(ls)
    ls.add_argument("--format", choices=["table", "json"], default="table")
    ls.set_defaults(handler=_cmd_ls)

    logs = sub.add_parser("logs", help="Show a run's container logs")
    logs.add_argument("name", help="Run name")
    logs.add_argument("-f", "--follow", action="store_true")
    logs.set_defaults(handler=_cmd_logs)

    return parser


def _cmd_new(args: argparse.Namespace, settings: Settings) -> int:
    if args.max_workers is not None and args.max_workers < 1:
        raise ConfigError("--max-workers must be >= 1")
    request = _build_new_request(args, settings)
    with _execution_context(args, settings) as ctx:
        provision(ctx, request)
    return 0


def _cmd_rm(args: argparse.Namespace, settings: Settings) -> int:
    with _execution_context(args, settings) as ctx:
        summary = remove_runs(
            ctx,
            args.pattern,
            active=args.active,
            label=args.kill_label or settings.kill_label,
        )
    _print_teardown(summary, args.format)
    return 0


def _cmd_kill(args: argparse.Namespace, settings: Settings) -> int:
    with _execution_context(args, settings) as ctx:
        summary = kill_runs(
            ctx,
            args.pattern,
            active=args.active,
            label=args.kill_label or settings.kill_label,
        )
    _print_teardown(summary, args.format)
    return 0


def _cmd_lookup(args: argparse.Namespace, settings: Settings) -> int:
    field = parse_field(args.field)
    with _execution_context(args, settings) as ctx:
        values = lookup_values(
            ctx,
            field,
            args.pattern,
            active=args.active,
            label=args.kill_label or settings.kill_label,
        )
    if not values:
        print(f"No runs match pattern {resolve_pattern(args.pattern)}")
    for value in values:
        print(value)
    return 0


def _cmd_ls(args: argparse.Namespace, settings: Settings) -> int:
    with _execution_context(args, settings) as ctx:
        listings = list_runs(
            ctx,
            args.pattern,
            active=args.active,
            label=args.kill_label or settings.kill_label,
        )
    if args.format == "json":
        payload = [listing.to_json() for listing in listings]
        print(json.dumps(payload, indent=2, sort_keys=True))
    elif not listings:
        print(f"No runs match pattern {resolve_pattern(args.pattern)}")
    else:
        _render_runs_table(listings)
    return 0


def _cmd_logs(args: argparse.Namespace, settings: Settings) -> int:
    with _execution_context(args, settings) as ctx:
        container_id = find_container_id(ctx, args.name)
        return ctx.runtime.logs(container_id, follow=args.follow)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw_argv)
    setup_logging(level=args.log_level)
    command = str(getattr(args, "command", "unknown"))
    started = time.perf_counter()
    _cli_log.info("cli_command_start command=%s argv=%s", command, " ".join(raw_argv))

    exit_code = 1
    try:
        settings = load_settings(resolve_settings_path(args.settings))
        exit_code = int(args.handler(args, settings))
    except ConfigError as exc:
        _cli_log.error("cli_command_error command=%s kind=config error=%s", command, exc)
        print(f"[config error] {exc}", file=sys.stderr)
        exit_code = 2
    except Aborted as exc:
        _cli_log.info("cli_command_aborted command=%s reason=%s", command, exc)
        print("[aborted] No changes were made.", file=sys.stderr)
        exit_code = 1
    except KeyboardInterrupt:
        _cli_log.error("cli_command_error command=%s kind=interrupted", command)
        print("\n[interrupted]", file=sys.stderr)
        exit_code = 130
    except RuntimeError as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=runtime error=%s", command, exc
        )
        print(f"[runtime error] {exc}", file=sys.stderr)
        exit_code = 1
    except (OSError, ValueError) as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"[error] {type(exc).__name__}: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        _cli_log.info(
            "cli_command_end command=%s exit_code=%s duration_sec=%.3f",
            command,
            exit_code,
            time.perf_counter() - started,
        )

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
