"""RBAC resource types: directory role bindings and their subjects."""

from __future__ import annotations

from dataclasses import dataclass, field

GOOGLE_GROUP_KIND = "GoogleGroup"
"""Subject kind telling the controller to treat the entity as a Google group."""

RBAC_API_GROUP = "rbac.authorization.k8s.io"


@dataclass(frozen=True)
class GroupVersion:
    """An API group and version pair."""

    group: str
    version: str

    def __str__(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"


GROUP_VERSION = GroupVersion(group="rbac.crd.gocardless.com", version="v1alpha1")


@dataclass(frozen=True)
class Subject:
    """An entity (user, group, service account, ...) that a binding refers to."""

    kind: str
    name: str
    api_group: str = ""
    namespace: str = ""

    def is_google_group(self) -> bool:
        """Return True if this subject is to be resolved as a Google group."""
        return self.kind == GOOGLE_GROUP_KIND


@dataclass(frozen=True)
class RoleRef:
    """A reference to the role a binding grants."""

    kind: str
    name: str
    api_group: str = RBAC_API_GROUP


@dataclass
class DirectoryRoleBindingSpec:
    """Desired state of a DirectoryRoleBinding."""

    role_ref: RoleRef
    subjects: list[Subject] = field(default_factory=list)


@dataclass
class DirectoryRoleBinding:
    """A role binding whose subjects may include directory groups."""

    name: str
    spec: DirectoryRoleBindingSpec
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    group_version = GROUP_VERSION
    kind = "DirectoryRoleBinding"