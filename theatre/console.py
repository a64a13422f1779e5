"""Console resource types and their lifecycle helpers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from theatre.rbac import GroupVersion

GROUP_VERSION = GroupVersion(group="workloads.crd.gocardless.com", version="v1alpha1")


class ConsolePhase(str, enum.Enum):
    """Valid phases of a console."""

    PENDING_AUTHORISATION = "Pending Authorisation"
    PENDING = "Pending"
    RUNNING = "Running"
    STOPPED = "Stopped"
    DESTROYED = "Destroyed"


@dataclass
class ObjectMeta:
    """Identifying metadata of a resource."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    creation_timestamp: datetime | None = None


@dataclass(frozen=True)
class LocalObjectReference:
    """A reference by name to an object in the same namespace."""

    name: str = ""


@dataclass
class ConsoleSpec:
    """Desired state of a Console."""

    user: str = ""
    reason: str = ""
    timeout_seconds: int = 0
    console_template_ref: LocalObjectReference = field(
        default_factory=LocalObjectReference
    )
    ttl_seconds_before_running: int | None = None
    ttl_seconds_after_finished: int | None = None
    command: list[str] = field(default_factory=list)
    noninteractive: bool = False


@dataclass
class ConsoleStatus:
    """Observed state of a Console. A phase of None means it was just created."""

    pod_name: str = ""
    expiry_time: datetime | None = None
    completion_time: datetime | None = None
    phase: ConsolePhase | None = None


@dataclass
class Console:
    """An instance of a console environment created for a specific user."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: ConsoleSpec = field(default_factory=ConsoleSpec)
    status: ConsoleStatus = field(default_factory=ConsoleStatus)

    group_version = GROUP_VERSION
    kind = "Console"

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.labels

    @property
    def creation_timestamp(self) -> datetime | None:
        return self.metadata.creation_timestamp

    def creating(self) -> bool:
        """True if the console has no phase yet."""
        return self.status.phase is None

    def pending_authorisation(self) -> bool:
        return self.status.phase is ConsolePhase.PENDING_AUTHORISATION

    def pending_job(self) -> bool:
        """True if the console is in a phase before its job is created."""
        return self.creating() or self.pending_authorisation()

    def pending(self) -> bool:
        return self.status.phase is ConsolePhase.PENDING

    def running(self) -> bool:
        return self.status.phase is ConsolePhase.RUNNING

    def stopped(self) -> bool:
        return self.status.phase is ConsolePhase.STOPPED

    def destroyed(self) -> bool:
        return self.status.phase is ConsolePhase.DESTROYED

    def pre_running(self) -> bool:
        """True if the console is in a phase before Running."""
        return self.creating() or self.pending_authorisation() or self.pending()

    def post_running(self) -> bool:
        """True if the console is in a phase after Running."""
        return self.stopped() or self.destroyed()

    def ttl_after_finished(self) -> timedelta:
        """The after-finished TTL as a duration."""
        if self.spec.ttl_seconds_after_finished is None:
            raise ValueError("console has no ttl_seconds_after_finished set")
        return timedelta(seconds=self.spec.ttl_seconds_after_finished)

    def ttl_before_running(self) -> timedelta:
        """The before-running TTL as a duration."""
        if self.spec.ttl_seconds_before_running is None:
            raise ValueError("console has no ttl_seconds_before_running set")
        return timedelta(seconds=self.spec.ttl_seconds_before_running)

    def gc_time(self) -> datetime | None:
        """The time at which the console may be garbage collected, or None.

        Before Running this is the creation time plus the before-running TTL;
        once Stopped or Destroyed it is the completion time (or, failing that,
        the expiry time) plus the after-finished TTL.
        """
        if self.pre_running():
            if self.metadata.creation_timestamp is None:
                raise ValueError("console has no creation timestamp")
            return self.metadata.creation_timestamp + self.ttl_before_running()
        if self.post_running():
            finished = self.status.completion_time or self.status.expiry_time
            if finished is None:
                raise ValueError("finished console has neither completion nor expiry time")
            return finished + self.ttl_after_finished()
        return None

    def eligible_for_gc(self, now: datetime | None = None) -> bool:
        """True if the console's garbage collection time has passed."""
        gc_at = self.gc_time()
        if gc_at is None:
            return False
        if now is None:
            now = datetime.now(timezone.utc)
            if gc_at.tzinfo is None:
                now = now.replace(tzinfo=None)
        return gc_at < now