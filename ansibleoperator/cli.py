"""Command line entry point: the ``version`` and ``run`` commands."""

from __future__ import annotations

import argparse
import enum
import json
import logging
import os
import platform
import sys
from datetime import timedelta
from typing import Sequence

from ansibleoperator.runner import Runner
from ansibleoperator.watches import (
    ANSIBLE_COLLECTIONS_PATH_ENV_VAR,
    ANSIBLE_ROLES_PATH_ENV_VAR,
    ANSIBLE_VERBOSITY_DEFAULT,
    MAX_CONCURRENT_RECONCILES_DEFAULT,
    WatchError,
    load,
    parse_duration,
)

_log = logging.getLogger(__name__)

# Global command-line option.
VERBOSE_OPT = "verbose"

VERSION = "v1.34.1"
GIT_VERSION = "unknown"
GIT_COMMIT = "unknown"
KUBERNETES_VERSION = "v1.28.0"

WATCH_NAMESPACE_ENV_VAR = "WATCH_NAMESPACE"
ANSIBLE_DEBUG_LOGS_ENV_VAR = "ANSIBLE_DEBUG_LOGS"

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class _EventLogLevel(enum.Enum):
    NOTHING = "Nothing"
    TASKS = "Tasks"
    EVERYTHING = "Everything"


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _operator_version() -> str:
    return VERSION if GIT_VERSION == "unknown" else GIT_VERSION


def version_string() -> str:
    """The line printed by the ``version`` command."""
    return (
        f"ansible-operator version: {_quote(_operator_version())}, "
        f"commit: {_quote(GIT_COMMIT)}, "
        f"kubernetes version: {_quote(KUBERNETES_VERSION)}, "
        f"python version: {_quote(platform.python_version())}, "
        f"OS: {_quote(platform.system().lower())}, "
        f"ARCH: {_quote(platform.machine())}"
    )


def split_namespaces(namespaces: str) -> list[str]:
    """Split a comma separated namespace list, dropping blank entries."""
    return [name.strip() for name in namespaces.split(",") if name.strip()]


def ansible_debug_log() -> bool:
    """Whether ANSIBLE_DEBUG_LOGS asks for the full Ansible logs."""
    raw = os.environ.get(ANSIBLE_DEBUG_LOGS_ENV_VAR)
    if raw is None:
        _log.info(
            "Environment variable %s not set; using default value False",
            ANSIBLE_DEBUG_LOGS_ENV_VAR,
        )
        return False
    if raw in _TRUE_WORDS:
        return True
    if raw not in _FALSE_WORDS:
        _log.info(
            "Could not parse environment variable %s as a boolean; using default value False",
            ANSIBLE_DEBUG_LOGS_ENV_VAR,
        )
    return False


def set_ansible_env_vars(roles_path: str, collections_path: str) -> None:
    """Export the roles and collections paths given on the command line."""
    for name, value in (
        (ANSIBLE_ROLES_PATH_ENV_VAR, roles_path),
        (ANSIBLE_COLLECTIONS_PATH_ENV_VAR, collections_path),
    ):
        if not value:
            continue
        try:
            os.environ[name] = value
        except (OSError, ValueError) as exc:
            raise OSError(f"failed to set environment variable {name}: {exc}") from exc
        _log.info("Set the environment variable %s to %s", name, value)


def _ansible_events_to_log(value: str) -> _EventLogLevel:
    lowered = value.lower()
    if lowered == "everything":
        return _EventLogLevel.EVERYTHING
    if lowered == "nothing":
        return _EventLogLevel.NOTHING
    if lowered != "tasks" and value:
        _log.error(
            "--ansible-log-events flag value '%s' not recognized. "
            "Must be one of: Tasks, Everything, Nothing",
            value,
        )
    return _EventLogLevel.TASKS


def _duration_arg(text: str) -> timedelta:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ansible-operator")
    parser.add_argument(f"--{VERBOSE_OPT}", action="store_true", help="Enable verbose logging")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("version", help="Prints the version of the operator")

    run = commands.add_parser("run", help="Run the operator")
    run.add_argument("--watches-file", default="./watches.yaml")
    run.add_argument(
        "--max-concurrent-reconciles", type=int, default=MAX_CONCURRENT_RECONCILES_DEFAULT
    )
    run.add_argument("--ansible-verbosity", type=int, default=ANSIBLE_VERBOSITY_DEFAULT)
    run.add_argument("--ansible-args", default="")
    run.add_argument("--ansible-roles-path", default="")
    run.add_argument("--ansible-collections-path", default="")
    run.add_argument("--ansible-log-events", default="tasks")
    run.add_argument("--reconcile-period", type=_duration_arg, default=timedelta(hours=10))
    return parser


def _run(options: argparse.Namespace) -> int:
    _log.info(
        "Version: ansible-operator %s, commit %s, python %s",
        _operator_version(),
        GIT_COMMIT,
        platform.python_version(),
    )

    namespaces = split_namespaces(os.environ.get(WATCH_NAMESPACE_ENV_VAR, ""))
    if namespaces:
        _log.info("Watching namespaces %s", namespaces)
    else:
        _log.info("Watching all namespaces")

    try:
        set_ansible_env_vars(options.ansible_roles_path, options.ansible_collections_path)
    except OSError as exc:
        _log.error("Failed to set environment variable: %s", exc)
        return 1

    try:
        watches = load(
            options.watches_file, options.max_concurrent_reconciles, options.ansible_verbosity
        )
    except (OSError, WatchError) as exc:
        _log.error("Failed to load watches: %s", exc)
        return 1

    level = _ansible_events_to_log(options.ansible_log_events)
    debug_logs = ansible_debug_log()
    for watch in watches:
        # A period set in the watches file takes precedence over the flag.
        period = watch.reconcile_period or options.reconcile_period
        try:
            runner = Runner.from_watch(watch, options.ansible_args)
        except (OSError, WatchError) as exc:
            _log.error("Failed to create runner: %s", exc)
            return 1
        _log.info(
            "Configured %s: path=%s period=%s workers=%s events=%s debug=%s",
            watch.gvk,
            runner.path,
            period,
            watch.max_concurrent_reconciles,
            level.value,
            debug_logs,
        )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Parse the arguments and run the chosen command; returns the exit status."""
    options = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if getattr(options, VERBOSE_OPT) else logging.INFO,
        stream=sys.stderr,
    )
    if options.command == "version":
        print(version_string())
        return 0
    return _run(options)


if __name__ == "__main__":
    sys.exit(main())