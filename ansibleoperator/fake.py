"""A runner double that replays preset events, for use in tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterator, Mapping

from ansibleoperator.events import JobEvent


@dataclass
class FakeRunResult:
    """Result of a fake run."""

    job_events: tuple[JobEvent, ...] = ()
    stdout_text: str = ""

    def stdout(self) -> str:
        """The preset stdout; raises LookupError when none was set."""
        if self.stdout_text:
            return self.stdout_text
        raise LookupError("unable to find standard out")

    def events(self) -> Iterator[JobEvent]:
        """The preset events, in order."""
        return iter(self.job_events)


@dataclass
class FakeRunner:
    """Runner whose runs return preset events, or fail with a preset error."""

    finalizer_name: str = ""
    period: timedelta = timedelta(0)
    manage_status: bool = False
    watch_dependent_resources: bool = False
    watch_cluster_scoped_resources: bool = False
    error: Exception | None = None
    job_events: list[JobEvent] = field(default_factory=list)
    stdout_text: str = ""

    def run(self, ident: str, obj: Mapping[str, Any], kubeconfig: str) -> FakeRunResult:
        """Return the preset result, or raise the preset error."""
        if self.error is not None:
            raise self.error
        return FakeRunResult(job_events=tuple(self.job_events), stdout_text=self.stdout_text)

    def reconcile_period(self) -> timedelta | None:
        """The reconcile period, or None when it is zero."""
        return self.period if self.period != timedelta(0) else None

    def finalizer(self) -> str | None:
        """The finalizer name, or None when it is empty."""
        return self.finalizer_name or None