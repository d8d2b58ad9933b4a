import pytest

from policy_webhook import app as webhook


EXEMPT_NAMESPACE = "webhook-demo"


def make_pod(*containers, init_containers=None, **spec):
    pod = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": "test-pod"},
        "spec": {"containers": list(containers), **spec},
    }
    if init_containers is not None:
        pod["spec"]["initContainers"] = list(init_containers)
    return pod


def make_deployment(*containers, replicas=None, **pod_spec):
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "test-deployment"},
        "spec": {
            "template": {
                "metadata": {"labels": {"app": "test"}},
                "spec": {"containers": list(containers), **pod_spec},
            }
        },
    }
    if replicas is not None:
        deployment["spec"]["replicas"] = replicas
    return deployment


def create_request(obj, kind=None, namespace="default", uid="1234"):
    """Wrap `obj` in an AdmissionReview request the way the API server does."""
    if kind is None:
        kind = obj.get("kind", "") if isinstance(obj, dict) else ""
    group = "apps" if kind == "Deployment" else ""
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": group, "version": "v1", "kind": kind},
            "namespace": namespace,
            "operation": "CREATE",
            "object": obj,
        },
    }


@pytest.fixture()
def make_app():
    def _make_app(policy, **config):
        config.setdefault("EXEMPT_NAMESPACES", EXEMPT_NAMESPACE)
        return webhook.create_app(POLICY=policy, TESTING=True, **config)

    return _make_app


@pytest.fixture()
def app(make_app):
    yield make_app("privilege-escalation")


@pytest.fixture()
def client(app):
    return app.test_client()
