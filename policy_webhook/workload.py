"""Decode the object embedded in an admission request into a WorkloadView.

Only the fields the policies look at are modelled; everything else in the
object is ignored. Decoding is permissive: an object that cannot be decoded
for its declared kind yields an empty view rather than an error.
"""

import logging
from typing import Any, Callable, Iterator

import pydantic
from pydantic import BaseModel, ConfigDict

LOG = logging.getLogger(__name__)


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True)


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#securitycontext-v1-core
class SecurityContext(_Model):
    allowPrivilegeEscalation: bool | None = None
    readOnlyRootFilesystem: bool | None = None
    runAsUser: int | None = None


class EnvVar(_Model):
    name: str = ""


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#container-v1-core
class Container(_Model):
    name: str = ""
    securityContext: SecurityContext | None = None
    env: list[EnvVar] | None = None
    envFrom: list[dict[str, Any]] | None = None
    livenessProbe: dict[str, Any] | None = None


class PodSpec(_Model):
    containers: list[Container] | None = None
    initContainers: list[Container] | None = None
    enableServiceLinks: bool | None = None


class Pod(_Model):
    spec: PodSpec | None = None


class PodTemplateSpec(_Model):
    spec: PodSpec | None = None


class DeploymentSpec(_Model):
    replicas: int | None = None
    template: PodTemplateSpec | None = None


class Deployment(_Model):
    spec: DeploymentSpec | None = None


class WorkloadView(_Model):
    """Policy-relevant projection of a Pod or Deployment.

    `spec_path` is the JSON pointer of the pod spec inside the original
    object; container positions are the positions in the original arrays,
    so `f"{spec_path}/containers/{i}"` addresses the i-th container.
    """

    kind: str | None = None
    spec_path: str = ""
    containers: tuple[Container, ...] = ()
    init_containers: tuple[Container, ...] = ()
    replicas: int | None = None
    enable_service_links: bool | None = None

    def container_slices(
        self, include_init_containers: bool = False
    ) -> Iterator[tuple[str, tuple[Container, ...]]]:
        """Yield `(pointer, containers)` pairs, regular containers first."""
        yield f"{self.spec_path}/containers", self.containers
        if include_init_containers:
            yield f"{self.spec_path}/initContainers", self.init_containers


EMPTY_VIEW = WorkloadView()


def _from_pod_spec(kind: str, spec_path: str, spec: PodSpec | None, **extra):
    spec = spec or PodSpec()
    return WorkloadView(
        kind=kind,
        spec_path=spec_path,
        containers=tuple(spec.containers or ()),
        init_containers=tuple(spec.initContainers or ()),
        enable_service_links=spec.enableServiceLinks,
        **extra,
    )


def _decode_pod(obj: Any) -> WorkloadView:
    pod = Pod.model_validate(obj)
    return _from_pod_spec("Pod", "/spec", pod.spec)


def _decode_deployment(obj: Any) -> WorkloadView:
    deployment = Deployment.model_validate(obj)
    spec = deployment.spec or DeploymentSpec()
    template = spec.template or PodTemplateSpec()
    return _from_pod_spec(
        "Deployment", "/spec/template/spec", template.spec, replicas=spec.replicas
    )


DECODERS: dict[str, Callable[[Any], WorkloadView]] = {
    "Pod": _decode_pod,
    "Deployment": _decode_deployment,
}


def decode_workload(kind: str | None, obj: Any) -> WorkloadView:
    decoder = DECODERS.get(kind)
    if decoder is None:
        LOG.debug("no decoder for kind %s", kind)
        return EMPTY_VIEW

    try:
        return decoder(obj)
    except pydantic.ValidationError as err:
        LOG.warning("unable to decode %s, treating it as empty: %s", kind, err)
        return EMPTY_VIEW
