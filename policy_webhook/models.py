import base64
from typing import Any, Literal
from pydantic import (
    BaseModel,
    RootModel,
    constr,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    REPLACE = "replace"
    ADD = "add"


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: Any


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool
    status: AdmissionReviewStatus | None = None
    uid: constr(min_length=1)
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json().encode()).decode()
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")
        if not self.allowed:
            if self.patch:
                raise ValueError("a denied request cannot carry a patch")
            if not (self.status and self.status.message):
                raise ValueError("a denied request must carry a status message")

        return self


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: constr(min_length=1)
    kind: GroupVersionKind = GroupVersionKind()
    name: str | None = None
    namespace: str | None = None
    operation: Operation = Operation.CREATE

    # Left undecoded here; see workload.decode_workload.
    object: Any = None

    @field_validator("kind", mode="before")
    @classmethod
    def validate_kind(cls, val):
        if isinstance(val, str):
            return {"kind": val}
        return val

    @property
    def resource_kind(self) -> str | None:
        """Kind of the object under review, falling back to the object's own
        `kind` field when the envelope does not name one."""
        if self.kind.kind:
            return self.kind.kind
        if isinstance(self.object, dict):
            return self.object.get("kind")
        return None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: ApiVersion = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


class AdmissionReviewRequest(AdmissionReview):
    """An AdmissionReview as sent by the API server; `request` is required."""

    request: AdmissionRequest
