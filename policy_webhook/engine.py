import logging
from typing import Iterable, Iterator

import pydantic
from pydantic import BaseModel, model_validator

from policy_webhook.exc import EncodingError
from policy_webhook.models import (
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReview,
    AdmissionReviewStatus,
    Patch,
    PatchAction,
    PatchType,
)
from policy_webhook.policies import (
    ComplianceState,
    ContainerPolicy,
    Mode,
    Policy,
    ResourcePolicy,
)
from policy_webhook.workload import Container, WorkloadView, decode_workload

LOG = logging.getLogger(__name__)


class PolicyVerdict(BaseModel):
    """Outcome of evaluating one request.

    `patch` is None when no patch list applies at all (validating policies
    and exempt requests), and an empty list when a mutating policy found
    nothing to correct.
    """

    allowed: bool
    reasons: list[str] = []
    message: str | None = None
    patch: list[PatchAction] | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not self.allowed:
            if not self.reasons:
                raise ValueError("a deny verdict needs at least one reason")
            if self.patch is not None:
                raise ValueError("a deny verdict cannot carry a patch")
        elif self.reasons:
            raise ValueError("an allow verdict cannot carry reasons")

        return self


ALLOW = PolicyVerdict(allowed=True)


def is_exempt(namespace: str | None, exempt_namespaces: Iterable[str]) -> bool:
    return namespace is not None and namespace in exempt_namespaces


def _container_findings(
    policy: ContainerPolicy, view: WorkloadView
) -> Iterator[tuple[str, Container, ComplianceState]]:
    for base, containers in view.container_slices(policy.include_init_containers):
        for index, container in enumerate(containers):
            state = policy.evaluate(container)
            if state is not ComplianceState.COMPLIANT:
                yield f"{base}/{index}", container, state


def _resource_finding(policy: ResourcePolicy, view: WorkloadView) -> bool:
    return (
        policy.applies_to(view)
        and policy.evaluate(view) is not ComplianceState.COMPLIANT
    )


def build_patch(policy: Policy, view: WorkloadView) -> list[PatchAction]:
    """One patch operation per non-compliant container, in declaration
    order, or a single one for a non-compliant resource field."""
    if isinstance(policy, ContainerPolicy):
        return [
            policy.correction(path, container, state)
            for path, container, state in _container_findings(policy, view)
        ]
    if _resource_finding(policy, view):
        return [policy.correction(view)]
    return []


def collect_violations(policy: Policy, view: WorkloadView) -> list[str]:
    """Every violation in the workload, in container declaration order."""
    if isinstance(policy, ContainerPolicy):
        return [
            reason
            for _, container, _ in _container_findings(policy, view)
            for reason in policy.reasons(container)
        ]
    if _resource_finding(policy, view):
        return policy.reasons(view)
    return []


def evaluate(policy: Policy, view: WorkloadView) -> PolicyVerdict:
    if policy.mode is Mode.MUTATE:
        return PolicyVerdict(allowed=True, patch=build_patch(policy, view))

    reasons = collect_violations(policy, view)
    if not reasons:
        return ALLOW
    return PolicyVerdict(
        allowed=False, reasons=reasons, message=policy.deny_message(reasons)
    )


def encode_response(uid: str, verdict: PolicyVerdict) -> AdmissionReview:
    """Wrap a verdict in an AdmissionReview response for request `uid`."""
    fields = {"uid": uid, "allowed": verdict.allowed}
    if verdict.message:
        fields["status"] = AdmissionReviewStatus(message=verdict.message)
    if verdict.patch is not None:
        fields["patchType"] = PatchType.JSONPatch
        fields["patch"] = Patch(verdict.patch)

    try:
        return AdmissionReview(response=AdmissionResponse(**fields))
    except pydantic.ValidationError as err:
        LOG.error("failed to encode response for %s: %s", uid, err)
        raise EncodingError(f"failed to encode response for {uid!r}")


def review(
    policy: Policy, request: AdmissionRequest, exempt_namespaces: Iterable[str]
) -> AdmissionReview:
    """Run one admission request through the policy and encode the result."""
    if is_exempt(request.namespace, exempt_namespaces):
        LOG.info(
            "%s: namespace %s is exempt from %s",
            request.uid,
            request.namespace,
            policy.name,
        )
        return encode_response(request.uid, ALLOW)

    kind = request.resource_kind
    view = decode_workload(kind, request.object)
    verdict = evaluate(policy, view)
    LOG.info(
        "%s: %s %s/%s allowed=%s patches=%d",
        request.uid,
        kind,
        request.namespace,
        request.name,
        verdict.allowed,
        len(verdict.patch or ()),
    )
    return encode_response(request.uid, verdict)
