"""Job events reported by ansible-runner and their JSON form."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

# Ansible events
EVENT_PLAYBOOK_ON_TASK_START = "playbook_on_task_start"
EVENT_RUNNER_ON_OK = "runner_on_ok"
EVENT_RUNNER_ON_FAILED = "runner_on_failed"
EVENT_PLAYBOOK_ON_STATS = "playbook_on_stats"
EVENT_RUNNER_ITEM_ON_OK = "runner_item_on_ok"

# Ansible task actions
TASK_ACTION_SET_FACT = "set_fact"
TASK_ACTION_DEBUG = "debug"

DEFAULT_FAILED_MESSAGE = "unknown playbook failure"

_TIME_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?"
)


def parse_event_time(text: str) -> datetime:
    """Parse an event timestamp, tolerating surrounding quotes and backslashes.

    Fractions finer than a microsecond are truncated.
    """
    trimmed = text.strip('"\\')
    match = _TIME_RE.fullmatch(trimmed)
    if match is None:
        raise ValueError(f"cannot parse event time {text!r}")
    *parts, fraction = match.groups()
    microsecond = int((fraction or "0").ljust(9, "0")[:6])
    return datetime(*map(int, parts), microsecond)


def format_event_time(value: datetime) -> str:
    """Format a timestamp with up to eight fractional digits, trailing zeros dropped."""
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    fraction = f"{value.microsecond * 100:08d}".rstrip("0")
    if fraction:
        text += "." + fraction
    return text


def _typed(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if kind is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, kind)
    if not ok:
        raise ValueError(
            f"field {key!r}: expected {kind.__name__}, got {type(value).__name__}"
        )
    return value


def _int_map(data: Mapping[str, Any], key: str) -> dict[str, int]:
    mapping = _typed(data, key, dict, {})
    for name, count in mapping.items():
        if not isinstance(count, int) or isinstance(count, bool):
            raise ValueError(f"field {key!r}: value for {name!r} is not an integer")
    return dict(mapping)


def _created(data: Mapping[str, Any]) -> datetime:
    value = data.get("created")
    if value is None:
        return datetime.min
    if not isinstance(value, str):
        raise ValueError("field 'created': expected a string")
    return parse_event_time(value)


def _require_mapping(data: Any) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"event must be a JSON object, got {type(data).__name__}")
    return data


def _common_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "uuid": _typed(data, "uuid", str, ""),
        "counter": _typed(data, "counter", int, 0),
        "stdout": _typed(data, "stdout", str, ""),
        "start_line": _typed(data, "start_line", int, 0),
        "end_line": _typed(data, "EndLine", int, 0),
        "event": _typed(data, "event", str, ""),
        "pid": _typed(data, "pid", int, 0),
        "created": _created(data),
    }


@dataclass
class JobEvent:
    """One event of an ansible run."""

    uuid: str = ""
    counter: int = 0
    stdout: str = ""
    start_line: int = 0
    end_line: int = 0
    event: str = ""
    event_data: dict[str, Any] = field(default_factory=dict)
    pid: int = 0
    created: datetime = datetime.min

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JobEvent":
        """Build an event from its decoded JSON object."""
        data = _require_mapping(data)
        return cls(
            event_data=dict(_typed(data, "event_data", dict, {})),
            **_common_fields(data),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form of the event."""
        return {
            "uuid": self.uuid,
            "counter": self.counter,
            "stdout": self.stdout,
            "start_line": self.start_line,
            "EndLine": self.end_line,
            "event": self.event,
            "event_data": self.event_data,
            "pid": self.pid,
            "created": format_event_time(self.created),
        }

    def failed_playbook_message(self) -> str:
        """The failure message from ``res.msg``, or a generic one."""
        result = self.event_data.get("res")
        if not isinstance(result, dict):
            return DEFAULT_FAILED_MESSAGE
        message = result.get("msg")
        return message if isinstance(message, str) else DEFAULT_FAILED_MESSAGE

    def ignore_error(self) -> bool:
        """Whether the task carried the ``ignore_errors`` flag."""
        return self.event_data.get("ignore_errors") is True

    def rescued(self) -> bool:
        """Whether the task was rescued on any host."""
        if "rescued" not in self.event_data:
            return False
        return any(int(count) == 1 for count in self.event_data["rescued"].values())


@dataclass
class StatsEventData:
    """Data carried by a ``playbook_on_stats`` event."""

    playbook: str = ""
    playbook_uuid: str = ""
    changed: dict[str, int] = field(default_factory=dict)
    ok: dict[str, int] = field(default_factory=dict)
    failures: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StatsEventData":
        """Build stats from their decoded JSON object."""
        data = _require_mapping(data)
        return cls(
            playbook=_typed(data, "playbook", str, ""),
            playbook_uuid=_typed(data, "playbook_uuid", str, ""),
            changed=_int_map(data, "changed"),
            ok=_int_map(data, "ok"),
            failures=_int_map(data, "failures"),
            skipped=_int_map(data, "skipped"),
        )


@dataclass
class StatusJobEvent:
    """An event whose data holds playbook statistics."""

    uuid: str = ""
    counter: int = 0
    stdout: str = ""
    start_line: int = 0
    end_line: int = 0
    event: str = ""
    event_data: StatsEventData = field(default_factory=StatsEventData)
    pid: int = 0
    created: datetime = datetime.min

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StatusJobEvent":
        """Build a status event from its decoded JSON object."""
        data = _require_mapping(data)
        raw = data.get("event_data")
        stats = StatsEventData() if raw is None else StatsEventData.from_dict(raw)
        return cls(event_data=stats, **_common_fields(data))