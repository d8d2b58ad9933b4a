"""Compliance policies.

A webhook instance enforces exactly one policy. A policy is one of two
kinds:

- a `ContainerPolicy` evaluates each container of the workload on its own;
- a `ResourcePolicy` evaluates a single field of the workload as a whole.

Either kind runs in `validate` mode (violations become a deny) or, where
the policy knows how to correct a violation, in `mutate` mode (violations
become JSON patch operations and the request is always allowed).
"""

import logging
from enum import Enum, StrEnum
from typing import Any

from policy_webhook.exc import ConfigurationError
from policy_webhook.models import PatchAction, PatchOp
from policy_webhook.workload import Container, WorkloadView

LOG = logging.getLogger(__name__)


class ComplianceState(Enum):
    COMPLIANT = "compliant"
    # The securityContext is absent, so the correction has to add it whole.
    MISSING_CONTEXT = "missing-context"
    NON_COMPLIANT_VALUE = "non-compliant-value"


class Mode(StrEnum):
    VALIDATE = "validate"
    MUTATE = "mutate"


class Policy:
    name: str
    default_mode: Mode = Mode.VALIDATE
    title: str = "Policy violations detected:"
    hint: str | None = None

    def __init__(self, mode: Mode | str | None = None, **options):
        try:
            self.mode = Mode(mode) if mode else self.default_mode
        except ValueError:
            raise ConfigurationError(f"invalid mode: {mode}")

        if self.mode is Mode.MUTATE and not self.can_mutate:
            raise ConfigurationError(f"policy {self.name} does not support mutation")

    @property
    def can_mutate(self) -> bool:
        return False

    @property
    def route(self) -> str:
        return f"/{self.mode}"

    def deny_message(self, reasons: list[str]) -> str:
        message = "\n".join([self.title, *reasons])
        if self.hint:
            message += f"\n\n{self.hint}"
        return message

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name} mode={self.mode}>"


class ContainerPolicy(Policy):
    include_init_containers: bool = False

    def evaluate(self, container: Container) -> ComplianceState:
        raise NotImplementedError()

    def reasons(self, container: Container) -> list[str]:
        raise NotImplementedError()

    def correction(
        self, path: str, container: Container, state: ComplianceState
    ) -> PatchAction:
        """Return the patch that fixes `container`, found at `path`."""
        raise NotImplementedError()


class ResourcePolicy(Policy):
    kinds: frozenset[str] = frozenset({"Deployment"})

    def applies_to(self, view: WorkloadView) -> bool:
        return view.kind in self.kinds

    def evaluate(self, view: WorkloadView) -> ComplianceState:
        raise NotImplementedError()

    def reasons(self, view: WorkloadView) -> list[str]:
        raise NotImplementedError()

    def correction(self, view: WorkloadView) -> PatchAction:
        raise NotImplementedError()


class SecurityContextPolicy(ContainerPolicy):
    """Checks a single field of the container securityContext.

    `compliant_value` is what a correction writes; policies without one
    cannot mutate.
    """

    field: str
    compliant_value: Any = None
    requirement: str

    @property
    def can_mutate(self) -> bool:
        return self.compliant_value is not None

    def is_compliant(self, value) -> bool:
        return value == self.compliant_value

    def evaluate(self, container):
        if container.securityContext is None:
            return ComplianceState.MISSING_CONTEXT
        if not self.is_compliant(getattr(container.securityContext, self.field)):
            return ComplianceState.NON_COMPLIANT_VALUE
        return ComplianceState.COMPLIANT

    def reasons(self, container):
        return [f'container "{container.name}" {self.requirement}']

    def correction(self, path, container, state):
        # JSON patch "add" also replaces an existing member.
        if state is ComplianceState.MISSING_CONTEXT:
            return PatchAction(
                op=PatchOp.ADD,
                path=f"{path}/securityContext",
                value={self.field: self.compliant_value},
            )
        return PatchAction(
            op=PatchOp.ADD,
            path=f"{path}/securityContext/{self.field}",
            value=self.compliant_value,
        )


class PrivilegeEscalationPolicy(SecurityContextPolicy):
    name = "privilege-escalation"
    default_mode = Mode.MUTATE
    include_init_containers = True
    field = "allowPrivilegeEscalation"
    compliant_value = False
    title = "Privilege escalation must be disabled:"
    requirement = "must set securityContext.allowPrivilegeEscalation=false"


class ReadOnlyRootFilesystemPolicy(SecurityContextPolicy):
    name = "read-only-root-filesystem"
    field = "readOnlyRootFilesystem"
    compliant_value = True
    title = "All containers must set securityContext.readOnlyRootFilesystem=true:"
    requirement = "must set securityContext.readOnlyRootFilesystem=true"


class RunAsNonRootPolicy(SecurityContextPolicy):
    name = "run-as-non-root"
    field = "runAsUser"
    title = "Containers must not run as root:"
    requirement = (
        "must not run as root. Set securityContext.runAsUser to non-zero."
    )

    def is_compliant(self, value):
        return value is not None and value != 0


class ForbidEnvVarsPolicy(ContainerPolicy):
    name = "forbid-env-vars"
    title = "Forbidden environment variables detected:"
    hint = "Use volume mounts instead of environment variables."

    def evaluate(self, container):
        if container.env or container.envFrom:
            return ComplianceState.NON_COMPLIANT_VALUE
        return ComplianceState.COMPLIANT

    def reasons(self, container):
        reasons = [
            f'container "{container.name}" defines forbidden env var "{env.name}"'
            for env in container.env or ()
        ]
        if container.envFrom:
            reasons.append(
                f'container "{container.name}" uses forbidden envFrom '
                "(ConfigMap/Secret import)"
            )
        return reasons


class RequireLivenessProbePolicy(ContainerPolicy):
    name = "require-liveness-probe"
    title = "Liveness probes required:"

    def evaluate(self, container):
        if container.livenessProbe is None:
            return ComplianceState.NON_COMPLIANT_VALUE
        return ComplianceState.COMPLIANT

    def reasons(self, container):
        return [f'container "{container.name}" missing liveness probe']


class ReplicaFloorPolicy(ResourcePolicy):
    name = "replica-floor"
    default_mode = Mode.MUTATE
    title = "Insufficient replicas:"

    # Kubernetes defaults an unset replica count to 1.
    DEFAULT_REPLICAS = 1

    def __init__(self, mode=None, min_replicas: int = 3, **options):
        super().__init__(mode, **options)
        self.min_replicas = int(min_replicas)

    @property
    def can_mutate(self):
        return True

    def replicas(self, view: WorkloadView) -> int:
        if view.replicas is None:
            return self.DEFAULT_REPLICAS
        return view.replicas

    def evaluate(self, view):
        if self.replicas(view) < self.min_replicas:
            return ComplianceState.NON_COMPLIANT_VALUE
        return ComplianceState.COMPLIANT

    def reasons(self, view):
        return [
            f"deployment declares {self.replicas(view)} replicas, "
            f"at least {self.min_replicas} are required"
        ]

    def correction(self, view):
        return PatchAction(
            op=PatchOp.REPLACE, path="/spec/replicas", value=self.min_replicas
        )


class DisableServiceLinksPolicy(ResourcePolicy):
    name = "disable-service-links"
    default_mode = Mode.MUTATE
    title = "Service links must be disabled:"

    @property
    def can_mutate(self):
        return True

    def evaluate(self, view):
        if view.enable_service_links is False:
            return ComplianceState.COMPLIANT
        return ComplianceState.NON_COMPLIANT_VALUE

    def reasons(self, view):
        return ["pod template must set enableServiceLinks=false"]

    def correction(self, view):
        return PatchAction(
            op=PatchOp.ADD, path=f"{view.spec_path}/enableServiceLinks", value=False
        )


POLICIES: dict[str, type[Policy]] = {
    policy.name: policy
    for policy in (
        PrivilegeEscalationPolicy,
        ReadOnlyRootFilesystemPolicy,
        RunAsNonRootPolicy,
        ForbidEnvVarsPolicy,
        RequireLivenessProbePolicy,
        ReplicaFloorPolicy,
        DisableServiceLinksPolicy,
    )
}


def get_policy(name: str, mode: Mode | str | None = None, **options) -> Policy:
    """Build the named policy.

    `options` carries policy settings such as `min_replicas`; settings a
    policy does not use are ignored.
    """
    try:
        policy_class = POLICIES[name]
    except KeyError:
        raise ConfigurationError(f"unknown policy: {name}")

    policy = policy_class(mode, **options)
    LOG.info("enforcing %s", policy)
    return policy
