import pytest

from theatre.console import (
    Console,
    ConsoleSpec,
    ConsoleStatus,
    LocalObjectReference,
    ObjectMeta,
)
from theatre.lifecycle import EventKind, LifecycleEventRecorder
from theatre.webhooks import (
    AdmissionRequest,
    ConsoleAttachObserverWebhook,
    ConsoleAuthenticatorWebhook,
    ConsoleAuthorisationWebhook,
    ConsoleTemplateValidationWebhook,
    NotFoundError,
    Pod,
    ResourceClient,
)


class RecordingPublisher:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    def publish(self, event):
        if self.fail:
            raise RuntimeError("publish failed")
        self.events.append(event)
        return f"id-{len(self.events)}"


def make_recorder(publisher):
    return LifecycleEventRecorder(
        context_name="test-context",
        publisher=publisher,
        id_builder=lambda console: f"{console.namespace}/{console.name}",
    )


def make_console(name="console", user="user", pod_name="console-pod"):
    return Console(
        metadata=ObjectMeta(name=name, namespace="default"),
        spec=ConsoleSpec(
            user=user, console_template_ref=LocalObjectReference(name="template")
        ),
        status=ConsoleStatus(pod_name=pod_name),
    )


def subject(name):
    return {"kind": "User", "name": name, "apiGroup": "rbac.authorization.k8s.io"}


def authorisation(authorisers, console_ref="console", annotations=None):
    return {
        "metadata": {
            "name": "console",
            "namespace": "default",
            "annotations": annotations or {},
        },
        "spec": {
            "consoleRef": {"name": console_ref},
            "authorisations": [subject(name) for name in authorisers],
        },
    }


# ResourceClient


def test_resource_client_round_trip():
    console = make_console()
    pod = Pod(metadata=ObjectMeta(name="p", namespace="default"))
    client = ResourceClient(consoles=[console], pods=[pod])
    assert client.get_console("default", "console") is console
    assert client.get_pod("default", "p") is pod


def test_resource_client_missing_raises():
    client = ResourceClient()
    with pytest.raises(NotFoundError):
        client.get_console("default", "missing")
    with pytest.raises(LookupError):
        client.get_pod("default", "missing")


# Authenticator


def test_authenticator_replaces_user():
    webhook = ConsoleAuthenticatorWebhook()
    request = AdmissionRequest(
        uid="1",
        username="alice@example.com",
        object={"metadata": {"name": "c"}, "spec": {"user": "", "reason": "debug"}},
    )
    response = webhook.handle(request)
    assert response.allowed is True
    assert len(response.patch) == 1
    assert response.patch[0]["path"] == "/spec/user"
    assert response.patch[0]["value"] == "alice@example.com"


def test_authenticator_adds_user_when_missing():
    webhook = ConsoleAuthenticatorWebhook()
    request = AdmissionRequest(
        username="bob@example.com", object={"spec": {"reason": "debug"}}
    )
    response = webhook.handle(request)
    assert response.patch == [
        {"op": "add", "path": "/spec/user", "value": "bob@example.com"}
    ]


def test_authenticator_no_patch_when_user_unchanged():
    webhook = ConsoleAuthenticatorWebhook()
    request = AdmissionRequest(username="bob", object={"spec": {"user": "bob"}})
    response = webhook.handle(request)
    assert response.allowed is True
    assert response.patch == []


def test_authenticator_rejects_undecodable_object():
    webhook = ConsoleAuthenticatorWebhook()
    response = webhook.handle(AdmissionRequest(object={"spec": {"user": 42}}))
    assert response.allowed is False
    assert response.code == 400


# Template validation


def test_template_validation_allows_valid_template():
    webhook = ConsoleTemplateValidationWebhook()
    request = AdmissionRequest(
        object={
            "spec": {
                "authorisationRules": [
                    {"name": "bash", "matchCommandElements": ["bash", "**"]}
                ],
                "defaultAuthorisationRule": {"authorisationsRequired": 1},
            }
        }
    )
    response = webhook.handle(request)
    assert response.allowed is True


def test_template_validation_denies_missing_default_rule():
    webhook = ConsoleTemplateValidationWebhook()
    request = AdmissionRequest(
        object={"spec": {"authorisationRules": [{"matchCommandElements": ["bash"]}]}}
    )
    response = webhook.handle(request)
    assert response.allowed is False
    assert "the console template spec is invalid" in response.message
    assert (
        ".spec.defaultAuthorisationRule must be set if authorisation rules are defined"
        in response.message
    )


def test_template_validation_denies_inner_double_wildcard():
    webhook = ConsoleTemplateValidationWebhook()
    request = AdmissionRequest(
        object={
            "spec": {
                "authorisationRules": [
                    {"matchCommandElements": ["bash"]},
                    {"matchCommandElements": ["rails", "**", "other-stuff"]},
                ],
                "defaultAuthorisationRule": {"authorisationsRequired": 1},
            }
        }
    )
    response = webhook.handle(request)
    assert response.allowed is False
    assert (
        ".spec.authorisationRules[1].matchCommandElements[1]: "
        "a double wildcard is only valid at the end of the pattern" in response.message
    )


# Authorisation


@pytest.fixture
def authorisation_setup():
    publisher = RecordingPublisher()
    client = ResourceClient(consoles=[make_console(user="user")])
    webhook = ConsoleAuthorisationWebhook(client, make_recorder(publisher))
    return webhook, publisher


def test_authorisation_single_authoriser_allowed(authorisation_setup):
    webhook, publisher = authorisation_setup
    request = AdmissionRequest(
        username="current-user",
        old_object=authorisation(["existing-user"]),
        object=authorisation(["existing-user", "current-user"]),
    )
    response = webhook.handle(request)
    assert response.allowed is True
    assert [e.event for e in publisher.events] == [EventKind.AUTHORISE]
    assert publisher.events[0].spec["username"] == "current-user"


def test_authorisation_annotation_change_allowed(authorisation_setup):
    webhook, _ = authorisation_setup
    request = AdmissionRequest(
        username="current-user",
        old_object=authorisation(["existing-user"]),
        object=authorisation(["existing-user"], annotations={"note": "changed"}),
    )
    assert webhook.handle(request).allowed is True


@pytest.mark.parametrize(
    "updated, expected",
    [
        (
            authorisation(["existing-user", "current-user", "other"]),
            "spec.authorisations field can only be appended to",
        ),
        (
            authorisation(["existing-user", "another-user"]),
            "only the current user can be added as an authoriser",
        ),
        (authorisation([]), "spec.authorisations field can only be appended to"),
        (
            authorisation(["existing-user"], console_ref="other-console"),
            "field is immutable",
        ),
    ],
)
def test_authorisation_invalid_updates_denied(authorisation_setup, updated, expected):
    webhook, publisher = authorisation_setup
    request = AdmissionRequest(
        username="current-user",
        old_object=authorisation(["existing-user"]),
        object=updated,
    )
    response = webhook.handle(request)
    assert response.allowed is False
    assert "the console authorisation spec is invalid" in response.message
    assert expected in response.message
    assert publisher.events == []


def test_authorisation_owner_cannot_authorise():
    publisher = RecordingPublisher()
    client = ResourceClient(consoles=[make_console(user="owner")])
    webhook = ConsoleAuthorisationWebhook(client, make_recorder(publisher))
    request = AdmissionRequest(
        username="owner",
        old_object=authorisation([]),
        object=authorisation(["owner"]),
    )
    response = webhook.handle(request)
    assert response.allowed is False
    assert "authoriser cannot authorise their own console" in response.message


def test_authorisation_missing_console_denied():
    webhook = ConsoleAuthorisationWebhook(
        ResourceClient(), make_recorder(RecordingPublisher())
    )
    request = AdmissionRequest(
        username="current-user",
        old_object=authorisation([]),
        object=authorisation(["current-user"]),
    )
    response = webhook.handle(request)
    assert response.allowed is False
    assert response.message.startswith(
        "failed to retrieve console for the authorisation"
    )


def test_authorisation_publish_failure_still_allowed():
    client = ResourceClient(consoles=[make_console(user="user")])
    webhook = ConsoleAuthorisationWebhook(
        client, make_recorder(RecordingPublisher(fail=True))
    )
    request = AdmissionRequest(
        username="current-user",
        old_object=authorisation([]),
        object=authorisation(["current-user"]),
    )
    assert webhook.handle(request).allowed is True


# Attach observer


def console_pod(labels):
    return Pod(metadata=ObjectMeta(name="console-pod", namespace="default", labels=labels))


@pytest.fixture
def attach_setup():
    publisher = RecordingPublisher()
    recorded = []
    client = ResourceClient(
        consoles=[make_console()],
        pods=[console_pod({"console-name": "console"})],
    )
    webhook = ConsoleAttachObserverWebhook(
        client,
        make_recorder(publisher),
        event_recorder=lambda pod, reason, message: recorded.append((pod, reason)),
    )
    return webhook, publisher, recorded


def attach_request(dry_run=False, name="console-pod"):
    return AdmissionRequest(
        uid="uid",
        name=name,
        namespace="default",
        username="alice@example.com",
        object={"container": "console-container"},
        dry_run=dry_run,
    )


def test_attach_is_observed(attach_setup):
    webhook, publisher, recorded = attach_setup
    response = webhook.handle(attach_request())
    assert response.allowed is True
    assert response.message == "attachment observed"
    assert len(publisher.events) == 1
    event = publisher.events[0]
    assert event.event is EventKind.ATTACH
    assert event.spec["container"] == "console-container"
    assert event.spec["username"] == "alice@example.com"
    assert event.spec["pod"] == "console-pod"
    assert [reason for _, reason in recorded] == ["ConsoleAttach"]


def test_attach_dry_run_not_recorded(attach_setup):
    webhook, publisher, recorded = attach_setup
    response = webhook.handle(attach_request(dry_run=True))
    assert response.allowed is True
    assert response.message == "dry-run set; skipping attachment observation"
    assert publisher.events == []
    assert recorded == []


def test_attach_to_non_console_pod_skipped():
    publisher = RecordingPublisher()
    client = ResourceClient(pods=[console_pod({})])
    webhook = ConsoleAttachObserverWebhook(client, make_recorder(publisher))
    response = webhook.handle(attach_request())
    assert response.allowed is True
    assert response.message == "not a console; skipping observation"
    assert publisher.events == []


def test_attach_missing_pod_is_bad_request(attach_setup):
    webhook, _, _ = attach_setup
    response = webhook.handle(attach_request(name="missing"))
    assert response.allowed is False
    assert response.code == 400


def test_attach_missing_console_is_server_error():
    client = ResourceClient(pods=[console_pod({"console-name": "gone"})])
    webhook = ConsoleAttachObserverWebhook(client, make_recorder(RecordingPublisher()))
    response = webhook.handle(attach_request())
    assert response.allowed is False
    assert response.code == 500


def test_attach_undecodable_options_is_bad_request(attach_setup):
    webhook, publisher, _ = attach_setup
    request = attach_request()
    request.object = {"container": ["not", "a", "string"]}
    response = webhook.handle(request)
    assert response.code == 400
    assert publisher.events == []


def test_attach_publish_failure_still_allowed():
    client = ResourceClient(
        consoles=[make_console()], pods=[console_pod({"console-name": "console"})]
    )
    webhook = ConsoleAttachObserverWebhook(
        client, make_recorder(RecordingPublisher(fail=True))
    )
    response = webhook.handle(attach_request())
    assert response.allowed is True
    assert response.message == "attachment observed"