"""Console template resource types and authorisation rule matching."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from theatre.console import GROUP_VERSION, ObjectMeta
from theatre.rbac import Subject

SINGLE_WILDCARD = "*"
DOUBLE_WILDCARD = "**"
DEFAULT_RULE_NAME = "default"


class TemplateValidationError(ValueError):
    """Raised when a console template fails validation; holds every problem found."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class NoMatchingRuleError(LookupError):
    """Raised when no authorisation rule applies to a command."""

    def __init__(self, message: str = "no rules matched the command") -> None:
        super().__init__(message)


@dataclass
class Container:
    """A container within a pod template."""

    name: str = ""
    image: str = ""
    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)


@dataclass
class PodSpec:
    """The desired behaviour of a pod."""

    containers: list[Container] = field(default_factory=list)


@dataclass
class PodTemplate:
    """The data a pod should have when created from a template."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: PodSpec = field(default_factory=PodSpec)


@dataclass
class ConsoleAuthorisers:
    """The subjects able to authorise a console, and how many must do so."""

    authorisations_required: int = 0
    subjects: list[Subject] = field(default_factory=list)


@dataclass
class ConsoleAuthorisationRule:
    """A rule stating which commands need authorisation and by whom.

    Each element of ``match_command_elements`` is compared with the element of
    the command at the same position: ``*`` requires an element to be present
    but accepts any content, ``**`` (only valid as the last element) matches
    zero or more further elements, and anything else must match exactly.
    """

    name: str = ""
    match_command_elements: list[str] = field(default_factory=list)
    authorisations_required: int = 0
    subjects: list[Subject] = field(default_factory=list)

    @property
    def authorisers(self) -> ConsoleAuthorisers:
        return ConsoleAuthorisers(
            authorisations_required=self.authorisations_required,
            subjects=list(self.subjects),
        )

    def matches(self, command: Sequence[str]) -> bool:
        """True if the command matches this rule's elements."""
        elements = self.match_command_elements
        if not elements:
            return False

        if elements[-1] == DOUBLE_WILDCARD:
            if len(command) < len(elements) - 1:
                return False
        elif len(command) != len(elements):
            return False

        for matcher, part in zip(elements, command):
            if matcher == DOUBLE_WILDCARD:
                return True
            if matcher != SINGLE_WILDCARD and matcher != part:
                return False
        # A trailing "**" with no command element left to pair with.
        return True


@dataclass
class ConsoleTemplateSpec:
    """Desired state of a ConsoleTemplate."""

    template: PodTemplate = field(default_factory=PodTemplate)
    default_timeout_seconds: int = 0
    max_timeout_seconds: int = 0
    additional_attach_subjects: list[Subject] = field(default_factory=list)
    default_ttl_seconds_before_running: int | None = None
    default_ttl_seconds_after_finished: int | None = None
    authorisation_rules: list[ConsoleAuthorisationRule] = field(default_factory=list)
    default_authorisation_rule: ConsoleAuthorisers | None = None


@dataclass
class ConsoleTemplate:
    """A template from which consoles are created."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: ConsoleTemplateSpec = field(default_factory=ConsoleTemplateSpec)

    group_version = GROUP_VERSION
    kind = "ConsoleTemplate"

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def default_command_with_args(self) -> list[str]:
        """The first container's command followed by its arguments."""
        containers = self.spec.template.spec.containers
        if not containers:
            raise ValueError("template has no containers defined")
        first = containers[0]
        return [*first.command, *first.args]

    def authorisation_rule_for_command(
        self, command: Sequence[str]
    ) -> ConsoleAuthorisationRule:
        """Return the first rule matching the command, else the default rule.

        Raises TemplateValidationError if the template is invalid, and
        NoMatchingRuleError if nothing matches and there is no default rule.
        """
        self.validate()

        for rule in self.spec.authorisation_rules:
            if rule.matches(command):
                return rule

        default = self.spec.default_authorisation_rule
        if default is not None:
            return ConsoleAuthorisationRule(
                name=DEFAULT_RULE_NAME,
                authorisations_required=default.authorisations_required,
                subjects=list(default.subjects),
            )

        raise NoMatchingRuleError()

    def has_authorisation_rules(self) -> bool:
        """True if any authorisation rule, or a default rule, is defined."""
        return bool(self.spec.authorisation_rules) or (
            self.spec.default_authorisation_rule is not None
        )

    def validate(self) -> None:
        """Check the template for correctness, raising TemplateValidationError."""
        errors: list[str] = []

        for i, rule in enumerate(self.spec.authorisation_rules):
            last = len(rule.match_command_elements) - 1
            for j, element in enumerate(rule.match_command_elements):
                prefix = f".spec.authorisationRules[{i}].matchCommandElements[{j}]"
                if element == "":
                    errors.append(f"{prefix}: an empty matcher is invalid")
                elif element == DOUBLE_WILDCARD and j < last:
                    errors.append(
                        f"{prefix}: a double wildcard is only valid at the end of the pattern"
                    )

        if self.spec.authorisation_rules and self.spec.default_authorisation_rule is None:
            errors.append(
                ".spec.defaultAuthorisationRule must be set if authorisation rules are defined"
            )

        if errors:
            raise TemplateValidationError(errors)