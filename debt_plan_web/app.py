"""JSON API over the debt-plan services.

``create_app`` builds a Flask application around a ``Services`` container;
when none is given it is configured from the environment like the CLI. Run
it directly for local development:

    python -m debt_plan_web.app
"""

from __future__ import annotations

import os
from typing import Optional

from flask import Flask, jsonify, request

from debt_plan.config import DebtPlanConfig
from debt_plan.data_models import CloseOutcome, RateKind
from debt_plan.exceptions import (
    ConflictError,
    DebtPlanError,
    ExternalFetchError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from debt_plan.logging import get_logger, setup_logging
from debt_plan.monitor import TRIGGER_MANUAL
from debt_plan.services import Services
from debt_plan_web.serializers import (
    candidate_from_dict,
    date_field,
    decimal_field,
    enum_field,
    installment_to_dict,
    interest_from_payload,
    method_from_payload,
    plan_to_dict,
    rate_to_dict,
    report_to_dict,
    statistics_to_dict,
)

logger = get_logger(__name__)

_UPDATABLE_RATE_FIELDS = ("kind", "percentage", "valid_from", "valid_to", "reference", "note")
_UPDATABLE_INSTALLMENT_FIELDS = ("payment_method", "payment_reference", "payment_date", "receipt_location", "note")


def _status_for(exc: DebtPlanError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, PreconditionFailedError):
        return 422
    if isinstance(exc, ExternalFetchError):
        return 502
    return 400


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def create_app(services: Optional[Services] = None) -> Flask:
    if services is None:
        config = DebtPlanConfig.from_env()
        setup_logging(config.log_level, config.log_format)
        services = Services(config)

    app = Flask(__name__)
    app.config["SERVICES"] = services

    @app.errorhandler(DebtPlanError)
    def handle_debt_plan_error(exc: DebtPlanError):
        status = _status_for(exc)
        if status >= 500:
            logger.warning("Request failed: %s", exc)
        return jsonify({"error": exc.code, "message": str(exc)}), status

    # ------------------------------------------------------------------
    # Plans

    @app.post("/api/plans")
    def create_plan():
        data = _payload()
        count = data.get("installment_count")
        if not isinstance(count, int) or isinstance(count, bool):
            raise ValidationError("Field 'installment_count' must be an integer")
        plan = services.plans.create_plan(
            data.get("case_id") or "",
            decimal_field(data, "principal"),
            count,
            date_field(data, "start_date"),
            interest=interest_from_payload(data),
            method=method_from_payload(data),
            interest_start_date=date_field(data, "interest_start_date", required=False),
            note=data.get("note"),
            actor=data.get("actor"),
        )
        return jsonify(plan_to_dict(plan)), 201

    @app.get("/api/cases/<case_id>/plan")
    def plan_by_case(case_id: str):
        plan = services.plans.get_plan_by_case(case_id)
        if plan is None:
            return jsonify({"error": "PLAN_NOT_FOUND", "message": f"Case {case_id} has no plan"}), 404
        return jsonify(plan_to_dict(plan))

    @app.get("/api/plans/<plan_id>")
    def get_plan(plan_id: str):
        return jsonify(plan_to_dict(services.plans.get_plan(plan_id)))

    @app.get("/api/plans/<plan_id>/statistics")
    def plan_statistics(plan_id: str):
        return jsonify(statistics_to_dict(services.plans.get_statistics(plan_id)))

    @app.post("/api/plans/<plan_id>/close")
    def close_plan(plan_id: str):
        data = _payload()
        plan = services.plans.close_plan(
            plan_id, enum_field(data, "outcome", CloseOutcome), note=data.get("note"), actor=data.get("actor")
        )
        return jsonify(plan_to_dict(plan))

    @app.post("/api/plans/<plan_id>/reopen")
    def reopen_plan(plan_id: str):
        plan = services.plans.reopen_plan(plan_id, actor=_payload().get("actor"))
        return jsonify(plan_to_dict(plan))

    @app.post("/api/plans/<plan_id>/inject")
    def inject_recovered_amount(plan_id: str):
        data = _payload()
        plan = services.plans.inject_recovered_amount(plan_id, note=data.get("note"), actor=data.get("actor"))
        return jsonify(plan_to_dict(plan))

    @app.delete("/api/plans/<plan_id>")
    def delete_plan(plan_id: str):
        services.plans.delete_plan(plan_id)
        return "", 204

    # ------------------------------------------------------------------
    # Installments

    @app.post("/api/installments/<installment_id>/pay")
    def pay_installment(installment_id: str):
        data = _payload()
        inst = services.plans.pay_installment(
            installment_id,
            payment_date=date_field(data, "payment_date", required=False),
            payment_method=data.get("payment_method"),
            payment_reference=data.get("payment_reference"),
            note=data.get("note"),
            receipt_location=data.get("receipt_location"),
            actor=data.get("actor"),
        )
        return jsonify(installment_to_dict(inst))

    @app.post("/api/installments/<installment_id>/reverse")
    def reverse_installment(installment_id: str):
        inst = services.plans.reverse_installment(installment_id, actor=_payload().get("actor"))
        return jsonify(installment_to_dict(inst))

    @app.patch("/api/installments/<installment_id>")
    def update_installment(installment_id: str):
        data = _payload()
        changes = {name: data[name] for name in _UPDATABLE_INSTALLMENT_FIELDS if name in data}
        if "payment_date" in changes and changes["payment_date"] is not None:
            changes["payment_date"] = date_field(data, "payment_date")
        inst = services.plans.update_installment(installment_id, **changes)
        return jsonify(installment_to_dict(inst))

    @app.get("/api/installments/<installment_id>/receipt")
    def installment_receipt(installment_id: str):
        return jsonify({"receipt_location": services.plans.receipt_location(installment_id)})

    # ------------------------------------------------------------------
    # Rates

    @app.get("/api/rates")
    def list_rates():
        kind = request.args.get("kind")
        if kind:
            records = services.registry.list_by_kind(enum_field({"kind": kind}, "kind", RateKind))
        else:
            records = services.registry.list_rates()
        return jsonify([rate_to_dict(r) for r in records])

    @app.post("/api/rates")
    def create_rate():
        data = _payload()
        rate = services.registry.create(
            enum_field(data, "kind", RateKind),
            decimal_field(data, "percentage"),
            date_field(data, "valid_from"),
            date_field(data, "valid_to", required=False),
            reference=data.get("reference"),
            note=data.get("note"),
            allow_overlap=bool(data.get("allow_overlap", False)),
        )
        return jsonify(rate_to_dict(rate)), 201

    @app.get("/api/rates/<rate_id>")
    def get_rate(rate_id: str):
        return jsonify(rate_to_dict(services.registry.get(rate_id)))

    @app.patch("/api/rates/<rate_id>")
    def update_rate(rate_id: str):
        data = _payload()
        changes = {}
        for name in _UPDATABLE_RATE_FIELDS:
            if name not in data:
                continue
            if name == "kind":
                changes[name] = enum_field(data, name, RateKind)
            elif name == "percentage":
                changes[name] = decimal_field(data, name)
            elif name == "valid_from":
                changes[name] = date_field(data, name)
            elif name == "valid_to":
                changes[name] = date_field(data, name, required=False)
            else:
                changes[name] = data[name]
        rate = services.registry.update(rate_id, allow_overlap=bool(data.get("allow_overlap", False)), **changes)
        return jsonify(rate_to_dict(rate))

    @app.delete("/api/rates/<rate_id>")
    def delete_rate(rate_id: str):
        services.registry.delete(rate_id)
        return "", 204

    @app.get("/api/rates/current")
    def current_rates():
        on_date = date_field(request.args.to_dict(), "date", required=False)
        legal = services.registry.resolve(RateKind.LEGAL, on_date)
        moratory = services.registry.resolve(RateKind.MORATORY, on_date)
        return jsonify({
            "legal": rate_to_dict(legal) if legal else None,
            "moratory": rate_to_dict(moratory) if moratory else None,
        })

    @app.get("/api/rates/resolve")
    def resolve_rate():
        args = request.args.to_dict()
        rate = services.registry.resolve(
            enum_field(args, "kind", RateKind), date_field(args, "date", required=False)
        )
        if rate is None:
            return jsonify({"error": "RATE_NOT_FOUND", "message": "No rate available"}), 404
        return jsonify(rate_to_dict(rate))

    @app.post("/api/rates/fetch")
    def fetch_rates():
        report = services.monitor.run_sourcing(TRIGGER_MANUAL)
        return jsonify(report_to_dict(report))

    @app.post("/api/rates/approve")
    def approve_rate():
        data = _payload()
        rate = services.pipeline.approve(candidate_from_dict(data.get("candidate") or {}), data.get("admin_note"))
        return jsonify(rate_to_dict(rate)), 201

    @app.post("/api/rates/<rate_id>/overwrite")
    def overwrite_rate(rate_id: str):
        data = _payload()
        rate = services.pipeline.overwrite(
            candidate_from_dict(data.get("candidate") or {}), rate_id, data.get("admin_note")
        )
        return jsonify(rate_to_dict(rate))

    return app


if __name__ == "__main__":
    print("Starting debt-plan API...")
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", "8710")), debug=True)
