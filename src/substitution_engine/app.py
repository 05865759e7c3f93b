from __future__ import annotations

import logging
import os
from typing import Any

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .assignment import Assignment, InputSet, InvalidInputError
from .expressions import EvaluationError, ExpressionSyntaxError

ASSIGNMENT_EXTENSION = "substitution_assignment"
TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY_VALUES


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        return jsonify({"error": "invalid request payload"}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False)
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _assignment() -> Assignment:
    return current_app.extensions[ASSIGNMENT_EXTENSION]


def _rule_request() -> tuple[Any, Any]:
    body = _json_body()
    return body.get("token"), body.get("rule_str")


def create_rules_app(
    assignment: Assignment | None = None,
    *,
    base_rules: bool | None = None,
    custom_rules: bool | None = None,
) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "rules")
    _configure_error_handlers(app)
    app.config["SUBSTITUTION_BASE_RULES"] = (
        base_rules if base_rules is not None else _env_flag("SUBSTITUTION_BASE_RULES", True)
    )
    app.config["SUBSTITUTION_CUSTOM_RULES"] = (
        custom_rules if custom_rules is not None else _env_flag("SUBSTITUTION_CUSTOM_RULES", True)
    )
    if assignment is None:
        assignment = Assignment.with_rules(
            base=app.config["SUBSTITUTION_BASE_RULES"],
            custom=app.config["SUBSTITUTION_CUSTOM_RULES"],
        )
    app.extensions[ASSIGNMENT_EXTENSION] = assignment

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/add_logical_rule")
    def add_logical_rule() -> Any:
        token, rule_str = _rule_request()
        if not isinstance(rule_str, str):
            return jsonify({"error": "rule_str must be a string"}), 400
        try:
            _assignment().add_logical_rule_from_str(token, rule_str)
        except (ExpressionSyntaxError, InvalidInputError) as exc:
            app.logger.info("rule_rejected", extra={"kind": "logical", "token": token, "error": str(exc)})
            return jsonify({"error": str(exc)}), 400
        return jsonify({"status": "ok"})

    @app.post("/api/add_arithmetic_rule")
    def add_arithmetic_rule() -> Any:
        token, rule_str = _rule_request()
        if not isinstance(rule_str, str):
            return jsonify({"error": "rule_str must be a string"}), 400
        try:
            _assignment().add_arithmetic_rule_from_str(token, rule_str)
        except (ExpressionSyntaxError, InvalidInputError) as exc:
            app.logger.info("rule_rejected", extra={"kind": "arithmetic", "token": token, "error": str(exc)})
            return jsonify({"error": str(exc)}), 400
        return jsonify({"status": "ok"})

    @app.post("/api/remove_rules")
    def remove_rules() -> Any:
        _assignment().remove_rules()
        return jsonify({"status": "ok"})

    @app.get("/api/rules")
    def list_rules() -> Any:
        return jsonify(_assignment().snapshot())

    @app.post("/api/eval")
    def evaluate() -> Any:
        try:
            inputs = InputSet.from_mapping(_json_body())
            token, result = _assignment().eval_inputs(inputs)
        except (InvalidInputError, EvaluationError) as exc:
            app.logger.info("evaluation_failed", extra={"error": str(exc), "error_type": type(exc).__name__})
            return jsonify({"error": str(exc)}), 400
        return jsonify({"token": token, "result": result})

    return app
