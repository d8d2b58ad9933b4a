import logging
import sys

import pydantic
from flask import Flask, request, jsonify, current_app

from policy_webhook import engine
from policy_webhook.exc import ApplicationError, ConfigurationError
from policy_webhook.models import AdmissionReviewRequest, BaseModel
from policy_webhook.policies import get_policy

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


class DEFAULTS:
    MODE = None
    EXEMPT_NAMESPACES = "webhook-demo"
    MIN_REPLICAS = 3
    HOST = "0.0.0.0"
    PORT = 8443
    TLS_CERT_FILE = "/tls/tls.crt"
    TLS_KEY_FILE = "/tls/tls.key"


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if isinstance(res, BaseModel):
                return jsonify(res.model_dump(mode="json", exclude_none=True))
            else:
                return jsonify(res)

        return _inner

    return _outer


def parse_namespaces(val) -> frozenset[str]:
    """Accepts a comma-separated string or a list of namespace names."""
    if isinstance(val, str):
        val = val.split(",")
    return frozenset(ns.strip() for ns in val or () if ns and ns.strip())


@jsonresponse()
def admit():
    body = AdmissionReviewRequest.model_validate(request.get_json())
    return engine.review(
        current_app.policy, body.request, current_app.config["EXEMPT_NAMESPACES"]
    )


def handle_validationerror(err):
    return str(err), 400, {"content-type": "text/plain"}


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    This makes it much easier to write tests for the application, since we can
    set up the test environment before instantiating the app. This is difficult
    to do if the app is created at `import` time.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("WEBHOOK")
    if config:
        app.config.update(config)

    if not app.config.get("POLICY"):
        LOG.error("Missing policy configuration")
        sys.exit(1)

    app.config["EXEMPT_NAMESPACES"] = parse_namespaces(
        app.config["EXEMPT_NAMESPACES"]
    )

    try:
        app.policy = get_policy(
            app.config["POLICY"],
            app.config["MODE"],
            min_replicas=app.config["MIN_REPLICAS"],
        )
    except ConfigurationError as err:
        LOG.error("Invalid policy configuration: %s", err)
        sys.exit(1)

    app.errorhandler(pydantic.ValidationError)(handle_validationerror)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule(app.policy.route, view_func=admit, methods=["POST"])

    return app


def main():
    app = create_app()
    LOG.info(
        "serving %s on %s:%s", app.policy.route, app.config["HOST"], app.config["PORT"]
    )
    app.run(
        host=app.config["HOST"],
        port=app.config["PORT"],
        ssl_context=(app.config["TLS_CERT_FILE"], app.config["TLS_KEY_FILE"]),
    )


if __name__ == "__main__":
    main()
