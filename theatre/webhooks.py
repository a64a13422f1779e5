"""Admission webhooks that authenticate, validate and observe consoles."""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from theatre.authorisation import (
    AuthorisationUpdateError,
    ConsoleAuthorisation,
    ConsoleAuthorisationSpec,
    ConsoleAuthorisationUpdate,
)
from theatre.console import (
    Console,
    ConsolePhase,
    ConsoleSpec,
    ConsoleStatus,
    LocalObjectReference,
    ObjectMeta,
)
from theatre.console_template import (
    ConsoleAuthorisationRule,
    ConsoleAuthorisers,
    ConsoleTemplate,
    ConsoleTemplateSpec,
    Container,
    PodSpec,
    PodTemplate,
    TemplateValidationError,
)
from theatre.lifecycle import LifecycleEventRecorder, PodStatus
from theatre.rbac import Subject

CONSOLE_NAME_LABEL = "console-name"

HTTP_OK = 200
HTTP_BAD_REQUEST = 400
HTTP_FORBIDDEN = 403
HTTP_INTERNAL_SERVER_ERROR = 500


class DecodeError(ValueError):
    """Raised when an admission request object cannot be decoded."""


class NotFoundError(LookupError):
    """Raised when a requested resource does not exist."""


@dataclass
class AdmissionRequest:
    """An admission review request as received by a webhook."""

    uid: str = ""
    name: str = ""
    namespace: str = ""
    username: str = ""
    object: Mapping[str, Any] | None = None
    old_object: Mapping[str, Any] | None = None
    dry_run: bool = False


@dataclass
class AdmissionResponse:
    """The outcome of an admission review."""

    allowed: bool
    message: str = ""
    code: int = HTTP_OK
    patch: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def allow(cls, message: str = "") -> AdmissionResponse:
        return cls(allowed=True, message=message)

    @classmethod
    def deny(cls, message: str) -> AdmissionResponse:
        return cls(allowed=False, message=message, code=HTTP_FORBIDDEN)

    @classmethod
    def errored(cls, code: int, error: BaseException) -> AdmissionResponse:
        return cls(allowed=False, message=str(error), code=code)

    @classmethod
    def patched(cls, patch: list[dict[str, Any]]) -> AdmissionResponse:
        return cls(allowed=True, patch=patch)


@dataclass
class Pod:
    """A pod, as far as the webhooks need to know it."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    status: PodStatus = field(default_factory=PodStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.labels


class ResourceClient:
    """An in-memory store of consoles and pods, looked up by namespace and name."""

    def __init__(
        self, consoles: Iterable[Console] = (), pods: Iterable[Pod] = ()
    ) -> None:
        self._consoles: dict[tuple[str, str], Console] = {}
        self._pods: dict[tuple[str, str], Pod] = {}
        for console in consoles:
            self.add_console(console)
        for pod in pods:
            self.add_pod(pod)

    def add_console(self, console: Console) -> None:
        self._consoles[(console.namespace, console.name)] = console

    def add_pod(self, pod: Pod) -> None:
        self._pods[(pod.namespace, pod.name)] = pod

    def get_console(self, namespace: str, name: str) -> Console:
        try:
            return self._consoles[(namespace, name)]
        except KeyError:
            raise NotFoundError(f'console "{namespace}/{name}" not found') from None

    def get_pod(self, namespace: str, name: str) -> Pod:
        try:
            return self._pods[(namespace, name)]
        except KeyError:
            raise NotFoundError(f'pod "{namespace}/{name}" not found') from None


# Decoding of request objects -------------------------------------------------


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise DecodeError(f"{where}: expected an object")
    return value


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DecodeError(f"{where}: expected a string")
    return value


def _integer(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"{where}: expected an integer")
    return value


def _optional_integer(value: Any, where: str) -> int | None:
    return None if value is None else _integer(value, where)


def _strings(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecodeError(f"{where}: expected a list")
    return [_string(item, where) for item in value]


def _string_map(value: Any, where: str) -> dict[str, str]:
    return {key: _string(item, where) for key, item in _mapping(value, where).items()}


def _time(value: Any, where: str) -> datetime | None:
    text = _string(value, where)
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise DecodeError(f"{where}: invalid timestamp {text!r}") from exc


def _decode_meta(value: Any) -> ObjectMeta:
    data = _mapping(value, "metadata")
    return ObjectMeta(
        name=_string(data.get("name"), "metadata.name"),
        namespace=_string(data.get("namespace"), "metadata.namespace"),
        labels=_string_map(data.get("labels"), "metadata.labels"),
        annotations=_string_map(data.get("annotations"), "metadata.annotations"),
        creation_timestamp=_time(
            data.get("creationTimestamp"), "metadata.creationTimestamp"
        ),
    )


def _decode_subjects(value: Any, where: str) -> list[Subject]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecodeError(f"{where}: expected a list")
    subjects = []
    for item in value:
        data = _mapping(item, where)
        subjects.append(
            Subject(
                kind=_string(data.get("kind"), f"{where}.kind"),
                name=_string(data.get("name"), f"{where}.name"),
                api_group=_string(data.get("apiGroup"), f"{where}.apiGroup"),
                namespace=_string(data.get("namespace"), f"{where}.namespace"),
            )
        )
    return subjects


def _decode_reference(value: Any, where: str) -> LocalObjectReference:
    data = _mapping(value, where)
    return LocalObjectReference(name=_string(data.get("name"), f"{where}.name"))


def _decode_console(value: Any) -> Console:
    data = _mapping(value, "object")
    spec = _mapping(data.get("spec"), "spec")
    status = _mapping(data.get("status"), "status")
    phase_text = _string(status.get("phase"), "status.phase")
    try:
        phase = ConsolePhase(phase_text) if phase_text else None
    except ValueError as exc:
        raise DecodeError(f"status.phase: unknown phase {phase_text!r}") from exc
    noninteractive = spec.get("noninteractive", False)
    if not isinstance(noninteractive, bool):
        raise DecodeError("spec.noninteractive: expected a boolean")
    return Console(
        metadata=_decode_meta(data.get("metadata")),
        spec=ConsoleSpec(
            user=_string(spec.get("user"), "spec.user"),
            reason=_string(spec.get("reason"), "spec.reason"),
            timeout_seconds=_integer(spec.get("timeoutSeconds"), "spec.timeoutSeconds"),
            console_template_ref=_decode_reference(
                spec.get("consoleTemplateRef"), "spec.consoleTemplateRef"
            ),
            ttl_seconds_before_running=_optional_integer(
                spec.get("ttlSecondsBeforeRunning"), "spec.ttlSecondsBeforeRunning"
            ),
            ttl_seconds_after_finished=_optional_integer(
                spec.get("ttlSecondsAfterFinished"), "spec.ttlSecondsAfterFinished"
            ),
            command=_strings(spec.get("command"), "spec.command"),
            noninteractive=noninteractive,
        ),
        status=ConsoleStatus(
            pod_name=_string(status.get("podName"), "status.podName"),
            expiry_time=_time(status.get("expiryTime"), "status.expiryTime"),
            completion_time=_time(status.get("completionTime"), "status.completionTime"),
            phase=phase,
        ),
    )


def _decode_authorisers(data: Mapping[str, Any], where: str) -> ConsoleAuthorisers:
    return ConsoleAuthorisers(
        authorisations_required=_integer(
            data.get("authorisationsRequired"), f"{where}.authorisationsRequired"
        ),
        subjects=_decode_subjects(data.get("subjects"), f"{where}.subjects"),
    )


def _decode_console_template(value: Any) -> ConsoleTemplate:
    data = _mapping(value, "object")
    spec = _mapping(data.get("spec"), "spec")
    template = _mapping(spec.get("template"), "spec.template")
    pod_spec = _mapping(template.get("spec"), "spec.template.spec")

    raw_containers = pod_spec.get("containers") or []
    if not isinstance(raw_containers, list):
        raise DecodeError("spec.template.spec.containers: expected a list")
    containers = []
    for item in raw_containers:
        entry = _mapping(item, "spec.template.spec.containers")
        containers.append(
            Container(
                name=_string(entry.get("name"), "container.name"),
                image=_string(entry.get("image"), "container.image"),
                command=_strings(entry.get("command"), "container.command"),
                args=_strings(entry.get("args"), "container.args"),
            )
        )

    raw_rules = spec.get("authorisationRules") or []
    if not isinstance(raw_rules, list):
        raise DecodeError("spec.authorisationRules: expected a list")
    rules = []
    for item in raw_rules:
        entry = _mapping(item, "spec.authorisationRules")
        authorisers = _decode_authorisers(entry, "spec.authorisationRules")
        rules.append(
            ConsoleAuthorisationRule(
                name=_string(entry.get("name"), "spec.authorisationRules.name"),
                match_command_elements=_strings(
                    entry.get("matchCommandElements"),
                    "spec.authorisationRules.matchCommandElements",
                ),
                authorisations_required=authorisers.authorisations_required,
                subjects=authorisers.subjects,
            )
        )

    default_rule = spec.get("defaultAuthorisationRule")
    return ConsoleTemplate(
        metadata=_decode_meta(data.get("metadata")),
        spec=ConsoleTemplateSpec(
            template=PodTemplate(
                metadata=_decode_meta(template.get("metadata")),
                spec=PodSpec(containers=containers),
            ),
            default_timeout_seconds=_integer(
                spec.get("defaultTimeoutSeconds"), "spec.defaultTimeoutSeconds"
            ),
            max_timeout_seconds=_integer(
                spec.get("maxTimeoutSeconds"), "spec.maxTimeoutSeconds"
            ),
            additional_attach_subjects=_decode_subjects(
                spec.get("additionalAttachSubjects"), "spec.additionalAttachSubjects"
            ),
            default_ttl_seconds_before_running=_optional_integer(
                spec.get("defaultTtlSecondsBeforeRunning"),
                "spec.defaultTtlSecondsBeforeRunning",
            ),
            default_ttl_seconds_after_finished=_optional_integer(
                spec.get("defaultTtlSecondsAfterFinished"),
                "spec.defaultTtlSecondsAfterFinished",
            ),
            authorisation_rules=rules,
            default_authorisation_rule=(
                None
                if default_rule is None
                else _decode_authorisers(
                    _mapping(default_rule, "spec.defaultAuthorisationRule"),
                    "spec.defaultAuthorisationRule",
                )
            ),
        ),
    )


def _decode_console_authorisation(value: Any) -> ConsoleAuthorisation:
    data = _mapping(value, "object")
    spec = _mapping(data.get("spec"), "spec")
    return ConsoleAuthorisation(
        metadata=_decode_meta(data.get("metadata")),
        spec=ConsoleAuthorisationSpec(
            console_ref=_decode_reference(spec.get("consoleRef"), "spec.consoleRef"),
            authorisations=_decode_subjects(
                spec.get("authorisations"), "spec.authorisations"
            ),
        ),
    )


def _decode_attach_container(value: Any) -> str:
    data = _mapping(value, "object")
    return _string(data.get("container"), "container")


@contextmanager
def _request_span(
    logger: logging.Logger, uid: str, end_message: str = "completed request"
) -> Iterator[None]:
    logger.info("starting request uuid=%s event=request.start", uid)
    start = time.monotonic()
    try:
        yield
    finally:
        logger.info(
            "%s uuid=%s event=request.end duration=%.6f",
            end_message,
            uid,
            time.monotonic() - start,
        )


# Webhooks --------------------------------------------------------------------


class ConsoleAuthenticatorWebhook:
    """Sets a console's user to the user who made the request."""

    def __init__(
        self,
        lifecycle_recorder: LifecycleEventRecorder | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.lifecycle_recorder = lifecycle_recorder
        self.logger = logger or logging.getLogger(__name__)

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        with _request_span(self.logger, request.uid):
            if request.object is None:
                return AdmissionResponse.errored(
                    HTTP_BAD_REQUEST, DecodeError("there is no content to decode")
                )
            try:
                _decode_console(request.object)
            except DecodeError as exc:
                return AdmissionResponse.errored(HTTP_BAD_REQUEST, exc)

            user = request.username
            raw_spec = request.object.get("spec")
            if isinstance(raw_spec, Mapping):
                if "user" in raw_spec and raw_spec["user"] == user:
                    patch: list[dict[str, Any]] = []
                else:
                    op = "replace" if "user" in raw_spec else "add"
                    patch = [{"op": op, "path": "/spec/user", "value": user}]
            else:
                patch = [{"op": "add", "path": "/spec", "value": {"user": user}}]

            self.logger.info(
                "authentication successful for user %s event=authentication.success",
                user,
            )
            return AdmissionResponse.patched(patch)


class ConsoleTemplateValidationWebhook:
    """Rejects console templates whose authorisation rules are invalid."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        with _request_span(self.logger, request.uid, "request completed"):
            try:
                template = _decode_console_template(request.object)
            except DecodeError as exc:
                # A template that cannot be decoded is validated as empty.
                self.logger.warning("failed to decode console template: %s", exc)
                template = ConsoleTemplate()

            try:
                template.validate()
            except TemplateValidationError as exc:
                self.logger.info("validation failure event=validation.failure")
                return AdmissionResponse.deny(
                    f"the console template spec is invalid: {exc}"
                )

            self.logger.info("completed validation event=validation.success")
            return AdmissionResponse.allow()


class ConsoleAuthorisationWebhook:
    """Validates updates to console authorisations and records authorisations."""

    def __init__(
        self,
        client: ResourceClient,
        lifecycle_recorder: LifecycleEventRecorder,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.lifecycle_recorder = lifecycle_recorder
        self.logger = logger or logging.getLogger(__name__)

    def _decode(self, value: Any) -> ConsoleAuthorisation:
        try:
            return _decode_console_authorisation(value)
        except DecodeError as exc:
            # An undecodable object is treated as empty, and is then refused
            # because no console can be found for it.
            self.logger.warning("failed to decode console authorisation: %s", exc)
            return ConsoleAuthorisation()

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        with _request_span(self.logger, request.uid):
            updated = self._decode(request.object)
            existing = self._decode(request.old_object)
            user = request.username

            try:
                console = self.client.get_console(
                    existing.namespace, existing.spec.console_ref.name
                )
            except LookupError as exc:
                return AdmissionResponse.deny(
                    f"failed to retrieve console for the authorisation: {exc}"
                )

            update = ConsoleAuthorisationUpdate(
                existing=existing,
                updated=updated,
                user=user,
                owner=console.spec.user,
            )
            try:
                update.validate()
            except AuthorisationUpdateError as exc:
                self.logger.info(
                    "authorisation failed event=authorisation.failure error=%s", exc
                )
                return AdmissionResponse.deny(
                    f"the console authorisation spec is invalid: {exc}"
                )

            self.logger.info("authorisation successful event=authorisation.success")
            try:
                self.lifecycle_recorder.console_authorise(console, user)
            except Exception:
                self.logger.exception("failed to record event event=console.authorise")

            return AdmissionResponse.allow()


EventRecorder = Callable[[Pod, str, str], None]


class ConsoleAttachObserverWebhook:
    """Observes attachments to console pods and records them."""

    def __init__(
        self,
        client: ResourceClient,
        lifecycle_recorder: LifecycleEventRecorder,
        logger: logging.Logger | None = None,
        event_recorder: EventRecorder | None = None,
    ) -> None:
        self.client = client
        self.lifecycle_recorder = lifecycle_recorder
        self.logger = logger or logging.getLogger(__name__)
        self.event_recorder = event_recorder

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        with _request_span(self.logger, request.uid):
            try:
                container = _decode_attach_container(request.object)
            except DecodeError as exc:
                self.logger.error("failed to decode attach options: %s", exc)
                return AdmissionResponse.errored(HTTP_BAD_REQUEST, exc)

            try:
                pod = self.client.get_pod(request.namespace, request.name)
            except LookupError as exc:
                self.logger.error("failed to get pod: %s", exc)
                return AdmissionResponse.errored(HTTP_BAD_REQUEST, exc)

            console_name = pod.labels.get(CONSOLE_NAME_LABEL)
            if console_name is None:
                return AdmissionResponse.allow("not a console; skipping observation")

            try:
                console = self.client.get_console(request.namespace, console_name)
            except LookupError as exc:
                self.logger.error(
                    "failed to get console console=%s: %s", console_name, exc
                )
                return AdmissionResponse.errored(HTTP_INTERNAL_SERVER_ERROR, exc)

            user = request.username
            if request.dry_run:
                self.logger.info(
                    "observed dry-run attach for pod %s/%s by user %s "
                    "console=%s dry-run=true",
                    pod.namespace,
                    pod.name,
                    user,
                    console.name,
                )
                return AdmissionResponse.allow(
                    "dry-run set; skipping attachment observation"
                )

            message = f"observed attach to pod {pod.namespace}/{pod.name} by user {user}"
            self.logger.info("%s event=ConsoleAttach", message)
            if self.event_recorder is not None:
                self.event_recorder(pod, "ConsoleAttach", message)

            try:
                self.lifecycle_recorder.console_attach(console, user, container)
            except Exception:
                self.logger.exception("failed to record event")

            return AdmissionResponse.allow("attachment observed")


__all__ = [
    "AdmissionRequest",
    "AdmissionResponse",
    "ConsoleAttachObserverWebhook",
    "ConsoleAuthenticatorWebhook",
    "ConsoleAuthorisationWebhook",
    "ConsoleTemplateValidationWebhook",
    "DecodeError",
    "NotFoundError",
    "Pod",
    "ResourceClient",
    "copy",
]