"""Mapping of Kubernetes kinds to the Ansible playbook or role that reconciles them."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from typing import Any, Iterable, Mapping

import yaml

_log = logging.getLogger(__name__)

ANSIBLE_ROLES_PATH_ENV_VAR = "ANSIBLE_ROLES_PATH"
ANSIBLE_COLLECTIONS_PATH_ENV_VAR = "ANSIBLE_COLLECTIONS_PATH"
DEFAULT_COLLECTIONS_PATH = "/usr/share/ansible/collections"

# Defaults for optional fields of a watch.
MAX_RUNNER_ARTIFACTS_DEFAULT = 20
RECONCILE_PERIOD_DEFAULT = timedelta(0)
MANAGE_STATUS_DEFAULT = True
WATCH_DEPENDENT_RESOURCES_DEFAULT = True
WATCH_CLUSTER_SCOPED_RESOURCES_DEFAULT = False
SNAKE_CASE_PARAMETERS_DEFAULT = True
WATCH_ANNOTATIONS_CHANGES_DEFAULT = False
MARK_UNSAFE_DEFAULT = False
MAX_CONCURRENT_RECONCILES_DEFAULT = os.cpu_count() or 1
ANSIBLE_VERBOSITY_DEFAULT = 2


class WatchError(ValueError):
    """A watches file or a watch is invalid."""


@dataclass(frozen=True)
class GroupVersionKind:
    """Identifies a Kubernetes kind."""

    group: str = ""
    version: str = ""
    kind: str = ""

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Kind={self.kind}"


@dataclass
class LabelSelectorRequirement:
    """One match expression of a label selector."""

    key: str = ""
    operator: str = ""
    values: list[str] = field(default_factory=list)


@dataclass
class LabelSelector:
    """Selects resources by their labels."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = field(default_factory=list)


@dataclass
class Finalizer:
    """A finalizer run when a watched resource is deleted."""

    name: str = ""
    playbook: str = ""
    role: str = ""
    vars: dict[str, Any] = field(default_factory=dict)


@dataclass
class Watch:
    """Maps a kind to the playbook or role run for it."""

    gvk: GroupVersionKind
    playbook: str = ""
    role: str = ""
    vars: dict[str, Any] = field(default_factory=dict)
    blacklist: list[GroupVersionKind] = field(default_factory=list)
    max_runner_artifacts: int = MAX_RUNNER_ARTIFACTS_DEFAULT
    reconcile_period: timedelta = RECONCILE_PERIOD_DEFAULT
    finalizer: Finalizer | None = None
    manage_status: bool = MANAGE_STATUS_DEFAULT
    watch_dependent_resources: bool = WATCH_DEPENDENT_RESOURCES_DEFAULT
    watch_cluster_scoped_resources: bool = WATCH_CLUSTER_SCOPED_RESOURCES_DEFAULT
    snake_case_parameters: bool = SNAKE_CASE_PARAMETERS_DEFAULT
    watch_annotations_changes: bool = WATCH_ANNOTATIONS_CHANGES_DEFAULT
    mark_unsafe: bool = MARK_UNSAFE_DEFAULT
    selector: LabelSelector = field(default_factory=LabelSelector)
    max_concurrent_reconciles: int = MAX_CONCURRENT_RECONCILES_DEFAULT
    ansible_verbosity: int = ANSIBLE_VERBOSITY_DEFAULT

    def validate(self) -> None:
        """Raise WatchError unless the watch names an existing playbook or role.

        A finalizer must have a name, and an existing playbook or role unless it
        sets vars.
        """
        try:
            verify_ansible_path(self.playbook, self.role)
        except WatchError:
            _log.error("Invalid ansible path for GVK: %s", self.gvk)
            raise
        if self.finalizer is None:
            return
        if not self.finalizer.name:
            _log.error("Invalid finalizer for GVK: %s", self.gvk)
            raise WatchError("finalizer must have name")
        try:
            verify_ansible_path(self.finalizer.playbook, self.finalizer.role)
        except WatchError:
            if not self.finalizer.vars:
                _log.error("Invalid ansible path on Finalizer for GVK: %s", self.gvk)
                raise

    def _resolve_paths(self, root_dir: str) -> None:
        if self.playbook:
            self.playbook = _full_path(root_dir, self.playbook)
        if self.role:
            self.role = _first_existing(possible_role_paths(root_dir, self.role), self.role)
        if self.finalizer is not None:
            if self.finalizer.role:
                self.finalizer.role = _first_existing(
                    possible_role_paths(root_dir, self.finalizer.role), self.finalizer.role
                )
            if self.finalizer.playbook:
                self.finalizer.playbook = _full_path(root_dir, self.finalizer.playbook)


def new_watch(
    gvk: GroupVersionKind,
    role: str,
    playbook: str,
    vars: Mapping[str, Any] | None,  # noqa: A002
    finalizer: Finalizer | None,
) -> Watch:
    """Return a watch with the default settings."""
    return Watch(
        gvk=gvk,
        role=role,
        playbook=playbook,
        vars=dict(vars or {}),
        finalizer=finalizer,
    )


# Paths ---------------------------------------------------------------------


def _join(*parts: str) -> str:
    kept = [part for part in parts if part]
    if not kept:
        return ""
    return os.path.normpath(os.path.join(*kept))


def _full_path(root_dir: str, path: str) -> str:
    if path and not os.path.isabs(path):
        return _join(root_dir, path)
    return path


def _first_existing(paths: Iterable[str], default: str) -> str:
    return next((path for path in paths if os.path.exists(path)), default)


def possible_role_paths(root_dir: str, path: str) -> list[str]:
    """List the places a role named by ``path`` may live, in search order."""
    if not path or os.path.isabs(path):
        return [path]
    candidates: list[str] = []
    fqcn = path.split(".")
    # A fully qualified collection name is <namespace>.<collection>.<role>.
    if len(fqcn) == 3:
        collections = os.environ.get(ANSIBLE_COLLECTIONS_PATH_ENV_VAR, "")
        if not collections:
            collections = DEFAULT_COLLECTIONS_PATH
            home = os.environ.get("HOME", "")
            if home:
                collections += ":" + _join(home, ".ansible/collections")
        candidates.extend(
            _join(parent, "ansible_collections", fqcn[0], fqcn[1], "roles", fqcn[2])
            for parent in collections.split(":")
        )
    roles = os.environ.get(ANSIBLE_ROLES_PATH_ENV_VAR, "")
    if roles:
        for parent in roles.split(":"):
            candidates.append(_join(parent, path))
            candidates.append(_join(parent, "roles", path))
    candidates.append(_full_path(root_dir, _join("roles", path)))
    return candidates


# Verification --------------------------------------------------------------


def verify_gvk(gvk: GroupVersionKind) -> None:
    """Raise WatchError if the version or kind is empty; the group may be empty."""
    if not gvk.version:
        raise WatchError("version must not be empty")
    if not gvk.kind:
        raise WatchError("kind must not be empty")


def verify_ansible_path(playbook: str, role: str) -> None:
    """Raise WatchError unless the playbook, or else the role, exists."""
    if playbook:
        if not os.path.exists(playbook):
            raise WatchError(f"playbook: {playbook} was not found")
    elif role:
        if not os.path.exists(role):
            raise WatchError(f"role: {role} was not found")
    else:
        raise WatchError("must specify Role or Playbook")


# Environment ---------------------------------------------------------------

_INTEGER = re.compile(r"[+-]?[0-9]+")

_EXPANSION = re.compile(
    r"\$(?:(?P<empty>\{\})|\{(?P<braced>[^}]+)\}|(?P<open>\{)"
    r"|(?P<special>[*#$@!?\-0-9])|(?P<name>[A-Za-z0-9_]+))"
)


def _expand(match: re.Match[str]) -> str:
    name = match.group("braced") or match.group("special") or match.group("name")
    if not name:
        return ""
    return os.environ.get(name, "${" + name + "}")


def replace_env_variables(text: str) -> str:
    """Replace ``$VAR`` and ``${VAR}`` with environment values.

    References to unset variables are left as ``${VAR}``.
    """
    return _EXPANSION.sub(_expand, text)


def _parse_int(value: str) -> int | None:
    return int(value) if _INTEGER.fullmatch(value) else None


def _env_key(prefix: str, gvk: GroupVersionKind) -> str:
    return f"{prefix}_{gvk.kind}_{gvk.group}".replace(".", "_").upper()


def _integer_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        _log.info("Environment variable %s not set; using default value %s", name, default)
        return default
    value = _parse_int(raw)
    if value is None:
        _log.info(
            "Could not parse environment variable %s as an integer; using default value %s",
            name,
            default,
        )
        return default
    return value


def max_concurrent_reconciles(gvk: GroupVersionKind, default: int) -> int:
    """Workers for a kind from MAX_CONCURRENT_RECONCILES_* or the older WORKER_*."""
    worker_var = _env_key("WORKER", gvk)
    reconciler_var = _env_key("MAX_CONCURRENT_RECONCILES", gvk)
    value = default
    if reconciler_var in os.environ:
        value = _integer_env(reconciler_var, default)
    elif worker_var in os.environ:
        _log.info(
            "Environment variable %s is deprecated, use %s instead", worker_var, reconciler_var
        )
        value = _integer_env(worker_var, default)
    if value <= 0:
        _log.info("Value %s not valid. Using default %s", value, default)
        return default
    return value


def ansible_verbosity(gvk: GroupVersionKind, default: int) -> int:
    """Verbosity for a kind from ANSIBLE_VERBOSITY_*, kept within 0 to 7."""
    value = _integer_env(_env_key("ANSIBLE_VERBOSITY", gvk), default)
    if not 0 <= value <= 7:
        _log.info("Value %s not valid. Using default %s", value, default)
        return default
    return value


# Durations -----------------------------------------------------------------

_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}

_DURATION_COMPONENT = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``300ms``, ``-1.5h`` or ``2h45m``.

    Precision finer than a microsecond is dropped.
    """
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")
    total = Fraction(0)
    position = 0
    while position < len(rest):
        match = _DURATION_COMPONENT.match(rest, position)
        whole, fraction, unit = match.group(1), match.group(2), match.group(3)
        if not whole and not fraction:
            raise ValueError(f"invalid duration {text!r}")
        if not unit:
            raise ValueError(f"missing unit in duration {text!r}")
        if unit not in _DURATION_UNITS:
            raise ValueError(f"unknown unit {unit!r} in duration {text!r}")
        amount = Fraction(int(whole or "0"))
        if fraction:
            amount += Fraction(int(fraction), 10 ** len(fraction))
        total += amount * _DURATION_UNITS[unit]
        position = match.end()
    microseconds = int(total) // 1000
    return timedelta(microseconds=-microseconds if negative else microseconds)


# Decoding ------------------------------------------------------------------


def _field(data: Mapping[Any, Any], name: str) -> Any:
    """Look a key up case-insensitively; the last matching key wins."""
    wanted = name.lower()
    found = None
    for key, value in data.items():
        if isinstance(key, str) and key.lower() == wanted:
            found = value
    return found


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise WatchError(f"{where}: expected a string, got {type(value).__name__}")


def _flag(value: Any, where: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise WatchError(f"{where}: expected a boolean, got {type(value).__name__}")
    return value


def _integer(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise WatchError(f"{where}: expected an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise WatchError(f"{where}: expected an integer, got {value!r}")


def _mapping(value: Any, where: str) -> dict[Any, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise WatchError(f"{where}: expected a mapping, got {type(value).__name__}")
    return dict(value)


def _sequence(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise WatchError(f"{where}: expected a list, got {type(value).__name__}")
    return value


def _duration(value: Any, where: str) -> timedelta:
    if value is None:
        return RECONCILE_PERIOD_DEFAULT
    if not isinstance(value, str):
        raise WatchError(f"{where}: expected a duration string, got {value!r}")
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise WatchError(f"{where}: {exc}") from exc


def _gvk(data: Any, where: str) -> GroupVersionKind:
    entry = _mapping(data, where)
    return GroupVersionKind(
        group=_string(_field(entry, "group"), f"{where}.group"),
        version=_string(_field(entry, "version"), f"{where}.version"),
        kind=_string(_field(entry, "kind"), f"{where}.kind"),
    )


def _finalizer(value: Any) -> Finalizer | None:
    if value is None:
        return None
    entry = _mapping(value, "finalizer")
    return Finalizer(
        name=_string(_field(entry, "name"), "finalizer.name"),
        playbook=_string(_field(entry, "playbook"), "finalizer.playbook"),
        role=_string(_field(entry, "role"), "finalizer.role"),
        vars=_mapping(_field(entry, "vars"), "finalizer.vars"),
    )


def _selector(value: Any) -> LabelSelector:
    entry = _mapping(value, "selector")
    labels = {
        str(key): _string(label, f"selector.matchLabels.{key}")
        for key, label in _mapping(_field(entry, "matchLabels"), "selector.matchLabels").items()
    }
    expressions = []
    for raw in _sequence(_field(entry, "matchExpressions"), "selector.matchExpressions"):
        item = _mapping(raw, "selector.matchExpressions")
        expressions.append(
            LabelSelectorRequirement(
                key=_string(_field(item, "key"), "matchExpressions.key"),
                operator=_string(_field(item, "operator"), "matchExpressions.operator"),
                values=[
                    _string(v, "matchExpressions.values")
                    for v in _sequence(_field(item, "values"), "matchExpressions.values")
                ],
            )
        )
    return LabelSelector(match_labels=labels, match_expressions=expressions)


def _watch_from_entry(
    entry: Any, root_dir: str, default_workers: int, default_verbosity: int
) -> Watch:
    if not isinstance(entry, Mapping):
        raise WatchError(f"each watch must be a mapping, got {type(entry).__name__}")
    gvk = _gvk(entry, "watch")
    watch = Watch(
        gvk=gvk,
        playbook=_string(_field(entry, "playbook"), "playbook"),
        role=_string(_field(entry, "role"), "role"),
        vars=_mapping(_field(entry, "vars"), "vars"),
        blacklist=[
            _gvk(item, "blacklist") for item in _sequence(_field(entry, "blacklist"), "blacklist")
        ],
        max_runner_artifacts=_integer(_field(entry, "maxRunnerArtifacts"), "maxRunnerArtifacts")
        or MAX_RUNNER_ARTIFACTS_DEFAULT,
        reconcile_period=_duration(_field(entry, "reconcilePeriod"), "reconcilePeriod"),
        finalizer=_finalizer(_field(entry, "finalizer")),
        manage_status=_flag(
            _field(entry, "manageStatus"), "manageStatus", MANAGE_STATUS_DEFAULT
        ),
        watch_dependent_resources=_flag(
            _field(entry, "watchDependentResources"),
            "watchDependentResources",
            WATCH_DEPENDENT_RESOURCES_DEFAULT,
        ),
        watch_cluster_scoped_resources=_flag(
            _field(entry, "watchClusterScopedResources"),
            "watchClusterScopedResources",
            WATCH_CLUSTER_SCOPED_RESOURCES_DEFAULT,
        ),
        snake_case_parameters=_flag(
            _field(entry, "snakeCaseParameters"),
            "snakeCaseParameters",
            SNAKE_CASE_PARAMETERS_DEFAULT,
        ),
        watch_annotations_changes=_flag(
            _field(entry, "watchAnnotationsChanges"),
            "watchAnnotationsChanges",
            WATCH_ANNOTATIONS_CHANGES_DEFAULT,
        ),
        mark_unsafe=_flag(_field(entry, "markUnsafe"), "markUnsafe", MARK_UNSAFE_DEFAULT),
        selector=_selector(_field(entry, "selector")),
    )
    try:
        verify_gvk(gvk)
    except WatchError as exc:
        raise WatchError(f"invalid GVK: {gvk}: {exc}") from exc
    watch.max_concurrent_reconciles = max_concurrent_reconciles(gvk, default_workers)
    watch.ansible_verbosity = ansible_verbosity(gvk, default_verbosity)
    watch._resolve_paths(root_dir)
    return watch


def load(path: str | os.PathLike[str], max_reconciler: int, ansible_verbosity: int) -> list[Watch]:
    """Load and validate the watches file at ``path``.

    ``max_reconciler`` and ``ansible_verbosity`` are the defaults used when no
    per-kind environment variable overrides them.
    """
    try:
        with open(path, encoding="utf-8") as handle:
            text = handle.read()
    except OSError:
        _log.error("Failed to get config file %s", path)
        raise
    try:
        document = yaml.safe_load(replace_env_variables(text))
    except yaml.YAMLError as exc:
        _log.error("Failed to unmarshal config")
        raise WatchError(f"failed to parse watches file: {exc}") from exc
    if document is None:
        document = []
    if not isinstance(document, list):
        raise WatchError("watches file must hold a list of watches")

    root_dir = os.getcwd()
    watches = [
        _watch_from_entry(entry, root_dir, max_reconciler, ansible_verbosity)
        for entry in document
    ]
    seen: set[GroupVersionKind] = set()
    for watch in watches:
        if watch.gvk in seen:
            raise WatchError(f"duplicate GVK: {watch.gvk}")
        seen.add(watch.gvk)
        try:
            watch.validate()
        except WatchError:
            _log.error("Watch with GVK %s failed validation", watch.gvk)
            raise
    return watches