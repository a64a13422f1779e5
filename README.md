# theatre

Models and admission logic for short-lived, audited consoles on a cluster.
The package covers console resources and the templates they are started
from. It also has the authorisation rules that decide who must approve a
console, and handlers that check and record what users do with consoles.
It needs nothing outside the standard library.

## What's inside

- `theatre.rbac`: `DirectoryRoleBinding`, `DirectoryRoleBindingSpec`,
  `Subject`, `RoleRef` and `GroupVersion`. `Subject.is_google_group()` is
  true when a subject's kind is `GoogleGroup`.
- `theatre.console`: `Console` with `ObjectMeta`, `ConsoleSpec`,
  `ConsoleStatus`, `LocalObjectReference` and the `ConsolePhase` enum.
  - Phase helpers: `creating()`, `pending_authorisation()`, `pending_job()`,
    `pending()`, `running()`, `stopped()`, `destroyed()`, `pre_running()`
    and `post_running()`.
  - `gc_time()` gives the time a console may be garbage collected.
    - Before it is Running, that is the creation time plus the before-running
      TTL.
    - Once it is Stopped or Destroyed, it is the completion time (or the
      expiry time) plus the after-finished TTL.
    - Otherwise it is `None`.
  - `eligible_for_gc(now=None)` compares that time with `now`.
  - `ttl_before_running()` and `ttl_after_finished()` raise `ValueError`
    when the TTL needed is not set.
- `theatre.console_template`: `ConsoleTemplate`, `ConsoleTemplateSpec`,
  `PodTemplate`, `PodSpec`, `Container`, `ConsoleAuthorisationRule` and
  `ConsoleAuthorisers`.
  - `validate()` raises `TemplateValidationError`, which lists every problem
    in `errors`.
  - `authorisation_rule_for_command(command)` picks the rule that governs a
    command. It raises `NoMatchingRuleError` when nothing matches and there
    is no default rule.
  - `default_command_with_args()` returns the first container's command
    followed by its arguments.
- `theatre.authorisation`: `ConsoleAuthorisation`,
  `ConsoleAuthorisationSpec`, `ConsoleAuthorisationUpdate` and
  `subject_diff(left, right)`.
  - `ConsoleAuthorisationUpdate.validate()` raises `AuthorisationUpdateError`
    in four cases:
    - the console reference changes;
    - subjects are removed;
    - more than one subject is added;
    - a subject other than the requesting user is added, or the console
      owner is added.
- `theatre.lifecycle`: `LifecycleEventRecorder` publishes
  `LifecycleEvent`s for a console. It has one method per event:
  `console_request`, `console_authorise`, `console_start`,
  `console_attach` and `console_terminate`.
  - It is built with a context name, a publisher and an `id_builder`
    callable. The publisher is any object with a `publish(event)` method that
    returns an id.
  - It counts successes in `published` and failures in `publish_errors`.
  - `describe_container_statuses(*status_lists)` turns `ContainerStatus`
    values into readable messages and exit codes by container name.
- `theatre.webhooks`: admission handlers. Each one takes an
  `AdmissionRequest` and returns an `AdmissionResponse`.
  - `ConsoleAuthenticatorWebhook` returns a JSON patch that sets
    `spec.user` to the requesting user.
  - `ConsoleTemplateValidationWebhook` rejects invalid templates.
  - `ConsoleAuthorisationWebhook` validates authorisation updates and records
    the authorisation.
  - `ConsoleAttachObserverWebhook` records attachments to console pods. It
    only logs dry runs.
  - Consoles and `Pod`s are looked up through `ResourceClient`, an in-memory
    store keyed by namespace and name.

## Matching commands against rules

Each authorisation rule has a list of match elements. They are compared with
the console command one position at a time:

| Matcher               | Command                 | Matches? |
| --------------------- | ----------------------- | -------- |
| `["bash"]`            | `["bash"]`              | Yes      |
| `["ls", "*"]`         | `["ls"]`                | No       |
| `["ls", "*"]`         | `["ls", "file"]`        | Yes      |
| `["echo", "**"]`      | `["echo"]`              | Yes      |
| `["echo", "**"]`      | `["echo", "hi", "bye"]` | Yes      |
| `["echo", "**", "x"]` | anything                | Error    |

- `*` matches any single element.
- `**` matches zero or more trailing elements and is only allowed last.
- An empty matcher is invalid.
- A template with rules must also have a default rule.

Rules are tried in order. When none matches, the default rule is returned
under the name `default`.

```python
from theatre.console_template import (
    ConsoleAuthorisationRule,
    ConsoleAuthorisers,
    ConsoleTemplate,
    ConsoleTemplateSpec,
)

template = ConsoleTemplate(
    spec=ConsoleTemplateSpec(
        authorisation_rules=[
            ConsoleAuthorisationRule(
                name="rails-runner",
                match_command_elements=["rails", "runner", "**"],
                authorisations_required=2,
            ),
        ],
        default_authorisation_rule=ConsoleAuthorisers(authorisations_required=1),
    )
)

rule = template.authorisation_rule_for_command(["rails", "runner", "script.rb"])
print(rule.name)  # rails-runner
print(template.authorisation_rule_for_command(["bash"]).name)  # default
```

## What it does not do

This package is the logic, not a running service. It has:

- no HTTP server to receive admission reviews;
- no controllers that create jobs or reap consoles;
- no client for a real cluster, since `ResourceClient` only holds what you
  add to it;
- no message-bus publisher, so you supply your own object to
  `LifecycleEventRecorder`;
- no command-line tool.

## Running the tests

```
pip install -e .[test]
pytest
```