"""Recording of console lifecycle events to a publisher."""

from __future__ import annotations

import enum
import logging
import signal
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol

from theatre.console import Console
from theatre.console_template import ConsoleAuthorisationRule

EVENT_VERSION = "v1alpha1"
CONSOLE_KIND = "console"


class EventKind(str, enum.Enum):
    """The kinds of console lifecycle event."""

    REQUEST = "request"
    AUTHORISE = "authorise"
    START = "start"
    ATTACH = "attach"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class TerminatedState:
    """Details of a container that has terminated."""

    exit_code: int = 0
    reason: str = ""
    signal: int = 0
    message: str = ""


@dataclass(frozen=True)
class WaitingState:
    """Details of a container that is waiting to run."""

    reason: str = ""
    message: str = ""


@dataclass(frozen=True)
class ContainerStatus:
    """The state of one container in a pod."""

    name: str
    terminated: TerminatedState | None = None
    waiting: WaitingState | None = None


@dataclass
class PodStatus:
    """Container statuses reported for a pod."""

    init_container_statuses: list[ContainerStatus] = field(default_factory=list)
    container_statuses: list[ContainerStatus] = field(default_factory=list)
    ephemeral_container_statuses: list[ContainerStatus] = field(default_factory=list)


@dataclass
class LifecycleEvent:
    """A console lifecycle event as handed to a publisher."""

    kind: str
    event: EventKind
    id: str
    observed_at: datetime
    spec: dict[str, Any]
    version: str = EVENT_VERSION
    annotations: dict[str, str] = field(default_factory=dict)


class Publisher(Protocol):
    def publish(self, event: LifecycleEvent) -> str:
        """Publish the event and return its identifier."""


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return ""


def describe_container_statuses(
    *status_lists: Iterable[ContainerStatus] | None,
) -> tuple[dict[str, str], dict[str, int]]:
    """Summarise container statuses as messages and exit codes by container name."""
    messages: dict[str, str] = {}
    exit_codes: dict[str, int] = {}

    for statuses in status_lists:
        for status in statuses or ():
            if status.terminated is not None:
                state = status.terminated
                message = f"Terminated with exit code {state.exit_code}"
                if state.reason:
                    message += f". Reason: {state.reason}"
                if state.signal:
                    message += f" (received signal {_signal_name(state.signal)})"
                if state.message:
                    message += f". Message: {state.message}"
                messages[status.name] = message
                exit_codes[status.name] = state.exit_code
            elif status.waiting is not None:
                state = status.waiting
                message = "Waiting."
                if state.reason:
                    message += f" Reason: {state.reason}."
                if state.message:
                    message += f" Message: {state.message}"
                messages[status.name] = message

    return messages, exit_codes


class LifecycleEventRecorder:
    """Publishes console lifecycle events and counts the outcomes."""

    def __init__(
        self,
        context_name: str,
        publisher: Publisher,
        id_builder: Callable[[Console], str],
        logger: logging.Logger | None = None,
    ) -> None:
        self.context_name = context_name
        self.publisher = publisher
        self.id_builder = id_builder
        self.logger = logger or logging.getLogger(__name__)
        self.published: Counter[str] = Counter()
        self.publish_errors: Counter[str] = Counter()

    def _publish(
        self, console: Console, kind: EventKind, label: str, spec: dict[str, Any]
    ) -> str:
        event = LifecycleEvent(
            kind=CONSOLE_KIND,
            event=kind,
            id=self.id_builder(console),
            observed_at=datetime.now(timezone.utc),
            spec=spec,
        )
        try:
            event_id = self.publisher.publish(event)
        except Exception:
            self.publish_errors[label] += 1
            raise
        self.published[label] += 1
        self.logger.info("event recorded id=%s event=%s", event_id, kind.value)
        return event_id

    def console_request(
        self, console: Console, rule: ConsoleAuthorisationRule | None
    ) -> str:
        """Record that a console was requested."""
        spec = {
            "reason": console.spec.reason,
            "username": console.spec.user,
            "context": self.context_name,
            "namespace": console.namespace,
            "console_template": console.spec.console_template_ref.name,
            "console": console.name,
            "required_authorisations": rule.authorisations_required if rule else 0,
            "authorisation_rule_name": rule.name if rule else "",
            "timestamp": console.creation_timestamp,
            "labels": dict(console.labels),
        }
        return self._publish(console, EventKind.REQUEST, "console_request", spec)

    def console_authorise(self, console: Console, username: str) -> str:
        """Record that a user authorised a console."""
        return self._publish(
            console, EventKind.AUTHORISE, "console_authorise", {"username": username}
        )

    def console_start(self, console: Console, job_name: str) -> str:
        """Record that a console's job was started."""
        return self._publish(
            console, EventKind.START, "console_start", {"job": job_name}
        )

    def console_attach(self, console: Console, username: str, container: str) -> str:
        """Record that a user attached to a console."""
        spec = {
            "username": username,
            "pod": console.status.pod_name,
            "container": container,
        }
        return self._publish(console, EventKind.ATTACH, "console_attach", spec)

    def console_terminate(self, console: Console, timed_out: bool, pod: Any) -> str:
        """Record that a console terminated, with its pod's container states."""
        if pod is not None:
            status = pod.status
            messages, exit_codes = describe_container_statuses(
                status.init_container_statuses,
                status.container_statuses,
                status.ephemeral_container_statuses,
            )
        else:
            messages, exit_codes = {}, {}
        spec = {
            "timed_out": timed_out,
            "container_statuses": messages,
            "exit_codes": exit_codes,
        }
        return self._publish(console, EventKind.TERMINATED, "console_terminate", spec)