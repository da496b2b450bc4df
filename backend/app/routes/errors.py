# Overview: Maps domain errors raised by services onto JSON responses.

from flask import jsonify

from ..services.exceptions import AlreadyProcessedError, PosCoreError


def domain_error_response(err: PosCoreError, **extra):
    """
    JSON body + status for a domain error.

    AlreadyProcessedError is a benign no-op: 200 with already_processed=true.
    `extra` is merged into the body (e.g. the current document state).
    """
    body = err.to_dict()
    if isinstance(err, AlreadyProcessedError):
        body["already_processed"] = True
    body.update(extra)
    return jsonify(body), err.http_status


def internal_error_response():
    return jsonify({"error": "Internal server error", "retry_safe": False}), 500
