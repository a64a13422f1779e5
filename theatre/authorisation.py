"""Console authorisation resources and validation of updates to them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from theatre.console import GROUP_VERSION, LocalObjectReference, ObjectMeta
from theatre.rbac import Subject


class AuthorisationUpdateError(ValueError):
    """Raised when an update to a console authorisation is not allowed."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


@dataclass
class ConsoleAuthorisationSpec:
    """Desired state of a ConsoleAuthorisation."""

    console_ref: LocalObjectReference = field(default_factory=LocalObjectReference)
    authorisations: list[Subject] = field(default_factory=list)


@dataclass
class ConsoleAuthorisation:
    """The set of authorisations given to a console."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: ConsoleAuthorisationSpec = field(default_factory=ConsoleAuthorisationSpec)

    group_version = GROUP_VERSION
    kind = "ConsoleAuthorisation"

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace


def subject_diff(left: Iterable[Subject], right: Iterable[Subject]) -> list[Subject]:
    """Subjects of ``left`` that do not appear in ``right``, in their order."""
    present = set(right)
    return [subject for subject in left if subject not in present]


@dataclass
class ConsoleAuthorisationUpdate:
    """A proposed change from one console authorisation to another."""

    existing: ConsoleAuthorisation
    updated: ConsoleAuthorisation
    user: str
    owner: str

    def validate(self) -> None:
        """Check the update is allowed, raising AuthorisationUpdateError if not."""
        errors: list[str] = []

        if self.updated.spec.console_ref != self.existing.spec.console_ref:
            errors.append("the spec.consoleRef field is immutable")

        added = subject_diff(
            self.updated.spec.authorisations, self.existing.spec.authorisations
        )
        removed = subject_diff(
            self.existing.spec.authorisations, self.updated.spec.authorisations
        )

        if len(added) > 1 or removed:
            errors.append(
                "the spec.authorisations field can only be appended to "
                "(with one subject) per update"
            )

        if any(subject.name != self.user for subject in added):
            errors.append("only the current user can be added as an authoriser")

        if any(subject.name == self.owner for subject in added):
            errors.append("an authoriser cannot authorise their own console")

        if errors:
            raise AuthorisationUpdateError(errors)