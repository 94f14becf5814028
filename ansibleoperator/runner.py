"""Runs ansible-runner for a watched kind and reports the run's events."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Iterable, Mapping

from ansibleoperator.eventapi import EventReceiver
from ansibleoperator.events import JobEvent
from ansibleoperator.inputdir import InputDir
from ansibleoperator.watches import Finalizer, GroupVersionKind, Watch

_log = logging.getLogger(__name__)

# Annotation overriding the number of artifact directories kept for a resource.
# Zero keeps all of them.
MAX_RUNNER_ARTIFACTS_ANNOTATION = "ansible.sdk.operatorframework.io/max-runner-artifacts"
# Annotation overriding the ansible-runner verbosity for a resource.
ANSIBLE_VERBOSITY_ANNOTATION = "ansible.sdk.operatorframework.io/verbosity"

ANSIBLE_RUNNER_BIN = "ansible-runner"
DEFAULT_BASE_DIR = "/tmp/ansible-operator/runner"

CommandFactory = Callable[[str, str, int, int], list]

_INTEGER = re.compile(r"[+-]?[0-9]+")


def ansible_verbosity_string(verbosity: int) -> str:
    """Return ``-v`` repeated to the verbosity level, or an empty string at 0 or below."""
    return "-" + "v" * verbosity if verbosity > 0 else ""


def playbook_command(
    path: str, ident: str, input_dir_path: str, max_artifacts: int, verbosity: int
) -> list[str]:
    """Arguments that run a playbook through ansible-runner."""
    args = [
        ANSIBLE_RUNNER_BIN,
        "run",
        input_dir_path,
        "--rotate-artifacts",
        str(max_artifacts),
        "-p",
        path,
        "-i",
        ident,
    ]
    if verbosity > 0:
        args.append(ansible_verbosity_string(verbosity))
    return args


def _split_path(path: str) -> tuple[str, str]:
    """Split after the last separator, keeping it on the directory part."""
    index = path.rfind(os.sep)
    return path[: index + 1], path[index + 1 :]


def role_command(
    path: str, ident: str, input_dir_path: str, max_artifacts: int, verbosity: int
) -> list[str]:
    """Arguments that run a role through ansible-runner."""
    roles_path, role_name = _split_path(path)
    args = [
        ANSIBLE_RUNNER_BIN,
        "run",
        input_dir_path,
        "--rotate-artifacts",
        str(max_artifacts),
        "--role",
        role_name,
        "--roles-path",
        roles_path,
        "--hosts",
        "localhost",
        "-i",
        ident,
    ]
    if verbosity > 0:
        args.append(ansible_verbosity_string(verbosity))
    # ansible-runner ignores ANSIBLE_GATHERING when running a role directly.
    if os.environ.get("ANSIBLE_GATHERING", "") == "explicit":
        args.append("--role-skip-facts")
    return args


def mark_unsafe(value: Any) -> Any:
    """Wrap every string, recursively, as ``{"__ansible_unsafe": value}``."""
    if isinstance(value, list):
        return [mark_unsafe(item) for item in value]
    if isinstance(value, dict):
        return {key: mark_unsafe(item) for key, item in value.items()}
    if isinstance(value, str):
        return {"__ansible_unsafe": value}
    return value


def escape_ansible_key(key: str) -> str:
    """Replace characters Ansible cannot use in a variable name with underscores."""
    return key.replace(".", "_").replace("-", "_")


def _snake_key(name: str) -> str:
    name = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", name)
    name = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name)
    return name.lower()


def _to_snake(value: Any) -> Any:
    if isinstance(value, dict):
        return {_snake_key(str(key)): _to_snake(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_to_snake(item) for item in value]
    return value


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def _annotation_int(annotations: Mapping[str, Any], key: str, default: int) -> int:
    if key not in annotations:
        return default
    raw = str(annotations[key])
    if not _INTEGER.fullmatch(raw):
        _log.info("Invalid annotation %s: %r", key, raw)
        return default
    return int(raw)


@dataclass
class RunResult:
    """Access to the events and stdout of one ansible run."""

    event_source: Iterable[JobEvent]
    ident: str
    input_dir: InputDir

    def stdout(self) -> str:
        """The stdout artifact of the run; raises OSError if it is not there."""
        return self.input_dir.stdout(self.ident)

    def events(self) -> Iterable[JobEvent]:
        """Events of the run; iteration ends when the run is over."""
        return self.event_source


@dataclass
class Runner:
    """Runs the playbook or role configured for one watched kind."""

    path: str = ""
    gvk: GroupVersionKind = field(default_factory=GroupVersionKind)
    finalizer_spec: Finalizer | None = None
    vars: dict[str, Any] = field(default_factory=dict)
    command: CommandFactory | None = None
    finalizer_command: CommandFactory | None = None
    max_runner_artifacts: int = 0
    ansible_verbosity: int = 0
    snake_case_parameters: bool = False
    mark_unsafe: bool = False
    ansible_args: str = ""
    base_dir: str = DEFAULT_BASE_DIR

    @classmethod
    def from_watch(cls, watch: Watch, runner_args: str) -> "Runner":
        """Build a runner from a validated watch."""
        try:
            watch.validate()
        except Exception:
            _log.error("Failed to validate watch")
            raise

        path = ""
        command: CommandFactory | None = None
        if watch.playbook:
            path = watch.playbook
            command = partial(playbook_command, path)
        elif watch.role:
            path = watch.role
            command = partial(role_command, path)

        finalizer = watch.finalizer
        if finalizer is None:
            finalizer_command = None
        elif finalizer.playbook:
            finalizer_command = partial(playbook_command, finalizer.playbook)
        elif finalizer.role:
            finalizer_command = partial(role_command, finalizer.role)
        else:
            finalizer_command = command

        return cls(
            path=path,
            gvk=watch.gvk,
            finalizer_spec=finalizer,
            vars=watch.vars,
            command=command,
            finalizer_command=finalizer_command,
            max_runner_artifacts=watch.max_runner_artifacts,
            ansible_verbosity=watch.ansible_verbosity,
            snake_case_parameters=watch.snake_case_parameters,
            mark_unsafe=watch.mark_unsafe,
            ansible_args=runner_args,
        )

    def finalizer(self) -> str | None:
        """The name of the finalizer, or None if there is none."""
        return self.finalizer_spec.name if self.finalizer_spec is not None else None

    def is_finalizer_run(self, obj: Mapping[str, Any]) -> bool:
        """Whether the object is being deleted and carries this runner's finalizer."""
        metadata = _metadata(obj)
        finalizers = metadata.get("finalizers")
        if self.finalizer_spec is None or finalizers is None:
            return False
        if metadata.get("deletionTimestamp") is None:
            return False
        return self.finalizer_spec.name in finalizers

    def make_parameters(self, obj: Mapping[str, Any]) -> dict[str, Any]:
        """Build the extra vars passed to Ansible for the object."""
        metadata = _metadata(obj)
        namespace = metadata.get("namespace", "") or ""
        name = metadata.get("name", "") or ""

        spec = obj.get("spec")
        if not isinstance(spec, dict):
            _log.info("Spec was not found for CR %s %s/%s", self.gvk, namespace, name)
            spec = {}

        parameters: dict[str, Any] = _to_snake(spec) if self.snake_case_parameters else dict(spec)
        if self.mark_unsafe:
            parameters = {key: mark_unsafe(value) for key, value in parameters.items()}

        parameters["ansible_operator_meta"] = {"namespace": namespace, "name": name}

        obj_key = escape_ansible_key(f"_{self.gvk.group}_{self.gvk.kind.lower()}")
        parameters[obj_key] = obj
        parameters[f"{obj_key}_spec"] = mark_unsafe(spec) if self.mark_unsafe else spec

        parameters.update(self.vars or {})
        if self.is_finalizer_run(obj):
            parameters.update(self.finalizer_spec.vars or {})
        return parameters

    def run(self, ident: str, obj: Mapping[str, Any], kubeconfig: str) -> RunResult:
        """Start ansible-runner for the object in the background.

        Raises FileNotFoundError when ansible-runner is not installed and
        RuntimeError for a deleted object whose finalizer is not ours.
        """
        if shutil.which(ANSIBLE_RUNNER_BIN) is None:
            raise FileNotFoundError(f"executable file not found in $PATH: {ANSIBLE_RUNNER_BIN}")

        metadata = _metadata(obj)
        if metadata.get("deletionTimestamp") is not None and not self.is_finalizer_run(obj):
            raise RuntimeError(
                "resource has been deleted, but no finalizer was matched, "
                "skipping reconciliation"
            )
        namespace = metadata.get("namespace", "") or ""
        name = metadata.get("name", "") or ""
        logger = logging.LoggerAdapter(
            _log, {"job": ident, "name": name, "namespace": namespace}
        )

        receiver = EventReceiver(ident)
        try:
            parts = [self.gvk.group, self.gvk.version, self.gvk.kind, namespace, name]
            input_dir = InputDir(
                path=os.path.join(self.base_dir, *(part for part in parts if part)),
                parameters=self.make_parameters(obj),
                env_vars={"K8S_AUTH_KUBECONFIG": kubeconfig, "KUBECONFIG": kubeconfig},
                settings={
                    "runner_http_url": receiver.socket_path,
                    "runner_http_path": receiver.url_path,
                },
                cmdline=self.ansible_args,
            )
            # A directory is a role path; anything else is a playbook.
            if not os.path.isdir(self.path) or os.path.islink(self.path):
                os.lstat(self.path)
                input_dir.playbook_path = self.path
            input_dir.write()
        except BaseException:
            receiver.close()
            raise

        annotations = metadata.get("annotations") or {}
        max_artifacts = _annotation_int(
            annotations, MAX_RUNNER_ARTIFACTS_ANNOTATION, self.max_runner_artifacts
        )
        verbosity = _annotation_int(
            annotations, ANSIBLE_VERBOSITY_ANNOTATION, self.ansible_verbosity
        )

        worker = threading.Thread(
            target=self._execute,
            args=(ident, obj, input_dir, receiver, max_artifacts, verbosity, kubeconfig, logger),
            name=f"runner-{ident}",
            daemon=True,
        )
        worker.start()
        return RunResult(event_source=receiver.events, ident=ident, input_dir=input_dir)

    def _execute(
        self,
        ident: str,
        obj: Mapping[str, Any],
        input_dir: InputDir,
        receiver: EventReceiver,
        max_artifacts: int,
        verbosity: int,
        kubeconfig: str,
        logger: logging.LoggerAdapter,
    ) -> None:
        if self.is_finalizer_run(obj):
            logger.debug(
                "Resource is marked for deletion, running finalizer %s",
                self.finalizer_spec.name,
            )
            factory = self.finalizer_command
        else:
            factory = self.command
        args = factory(ident, str(input_dir.path), max_artifacts, verbosity)
        env = dict(os.environ, K8S_AUTH_KUBECONFIG=kubeconfig, KUBECONFIG=kubeconfig)

        try:
            completed = subprocess.run(
                args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, env=env, check=False
            )
        except OSError as exc:
            logger.error("Failed to start ansible-runner: %s", exc)
        else:
            if completed.returncode != 0:
                logger.error(
                    "ansible-runner exited with status %s: %s",
                    completed.returncode,
                    completed.stdout.decode("utf-8", errors="replace"),
                )
            else:
                logger.info("Ansible-runner exited successfully")

        receiver.close()
        if receiver.serve_error is not None:
            logger.error("Error from event API: %s", receiver.serve_error)

        artifacts = os.path.join(str(input_dir.path), "artifacts")
        current_run = os.path.join(artifacts, ident)
        latest = os.path.join(artifacts, "latest")
        if os.path.lexists(latest):
            try:
                os.remove(latest)
            except OSError as exc:
                logger.error("Error removing the latest artifacts symlink: %s", exc)
                return
        try:
            os.symlink(current_run, latest)
        except OSError as exc:
            logger.error("Error symlinking latest artifacts: %s", exc)