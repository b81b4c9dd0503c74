from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from gare.application.services import WorkflowServices, build_services
from gare.db import get_db
from gare.domain.records import Record, StateChangeRecord, record_to_dict
from gare.domain.results import Result
from gare.domain.values import parse_decimal, parse_timestamp
from gare.errors import ValidationError, app_error_from_workflow
from gare.infrastructure.repositories import PageRequest
from gare.ui_strings import status_keys_for_group, success_message


lots_bp = Blueprint("lots", __name__)

_TRUE_VALUES = {"1", "true", "yes", "on", "si"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _services() -> WorkflowServices:
    return build_services(current_app.config)


def _payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _invalid(field: str, message_key: str = "field_invalid") -> ValidationError:
    return ValidationError(code=message_key, message_key=message_key, payload={"field": field})


def _text(payload: Dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    return str(value).strip() or None


def _parse_datetime(payload: Dict[str, Any], key: str, *, required: bool = False) -> datetime | None:
    raw = payload.get(key)
    try:
        value = parse_timestamp(raw)
    except (TypeError, ValueError) as exc:
        raise _invalid(key) from exc
    if value is None and required:
        raise _invalid(key, "field_required")
    return value


def _parse_money(payload: Dict[str, Any], key: str) -> Decimal | None:
    raw = payload.get(key)
    if isinstance(raw, float):
        raw = repr(raw)
    try:
        return parse_decimal(raw)
    except ValueError as exc:
        raise _invalid(key) from exc


def _parse_tri_state(payload: Dict[str, Any], key: str) -> bool | None:
    raw = payload.get(key)
    if raw is None or isinstance(raw, bool):
        return raw
    lowered = str(raw).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    if not lowered:
        return None
    raise _invalid(key)


def _parse_flag(payload: Dict[str, Any], key: str) -> bool:
    return bool(_parse_tri_state(payload, key))


def _parse_optional_int(payload: Dict[str, Any], key: str) -> int | None:
    raw = payload.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise _invalid(key)
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise _invalid(key) from exc


def _parse_int_arg(name: str, default: int, min_value: int, max_value: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise _invalid(name) from exc
    return max(min_value, min(value, max_value))


def _unwrap(result: Result):
    if not result.is_ok:
        raise app_error_from_workflow(result.error)
    return result.value


def _item(record: Record, status: int = 200, message_key: str | None = None):
    body: Dict[str, Any] = {"item": record_to_dict(record)}
    if message_key:
        body["message"] = success_message(message_key)
    return jsonify(body), status


def _state_change(record: StateChangeRecord | None, message_key: str = "state_changed"):
    return jsonify(
        {
            "state_change": record.to_dict() if record else None,
            "message": success_message(message_key),
        }
    )


@lots_bp.route("/api/tenders", methods=["GET", "POST"])
def tenders_api():
    services = _services()
    db = get_db()
    if request.method == "POST":
        payload = _payload()
        tender = _unwrap(
            services.tenders.create_tender(
                db,
                _text(payload, "code") or "",
                _text(payload, "title") or "",
                _parse_datetime(payload, "submission_deadline"),
            )
        )
        return _item(tender, 201)

    filters: Dict[str, Any] = {}
    status = (request.args.get("status") or "").strip()
    if status:
        if status not in status_keys_for_group("gara"):
            raise _invalid("status")
        filters["status"] = status
    page = services.tenders.list_tenders(
        db,
        filters,
        PageRequest(
            limit=_parse_int_arg("limit", 50, 1, 500),
            offset=_parse_int_arg("offset", 0, 0, 1_000_000),
        ),
    )
    return jsonify(
        {
            "items": [record_to_dict(item) for item in page.items],
            "limit": page.limit,
            "offset": page.offset,
            "has_more": page.has_more,
        }
    )


@lots_bp.route("/api/tenders/<int:tender_id>", methods=["GET", "DELETE"])
def tender_api(tender_id: int):
    services = _services()
    db = get_db()
    if request.method == "DELETE":
        _unwrap(services.tenders.delete_tender(db, tender_id))
        return "", 204
    return _item(_unwrap(services.tenders.get_tender(db, tender_id)))


@lots_bp.route("/api/tenders/<int:tender_id>/close", methods=["POST"])
def tender_close_api(tender_id: int):
    record = _unwrap(_services().tenders.close_tender(get_db(), tender_id, _text(_payload(), "reason") or ""))
    return _state_change(record, "tender_closed")


@lots_bp.route("/api/tenders/<int:tender_id>/reopen", methods=["POST"])
def tender_reopen_api(tender_id: int):
    return _state_change(_unwrap(_services().tenders.reopen_tender(get_db(), tender_id)))


@lots_bp.route("/api/tenders/<int:tender_id>/lots", methods=["GET", "POST"])
def tender_lots_api(tender_id: int):
    services = _services()
    db = get_db()
    if request.method == "POST":
        payload = _payload()
        lot = _unwrap(
            services.tenders.create_lot(
                db,
                tender_id,
                _text(payload, "code") or "",
                _text(payload, "description") or "",
                _parse_money(payload, "base_price"),
                _parse_money(payload, "quoted_price"),
            )
        )
        return _item(lot, 201)
    lots = _unwrap(services.tenders.list_lots(db, tender_id))
    return jsonify({"items": [record_to_dict(item) for item in lots]})


@lots_bp.route("/api/lots/<int:lot_id>", methods=["GET", "DELETE"])
def lot_api(lot_id: int):
    services = _services()
    db = get_db()
    if request.method == "DELETE":
        _unwrap(services.tenders.delete_lot(db, lot_id))
        return "", 204
    return jsonify(_unwrap(services.lots.lot_detail(db, lot_id, services.quotes.quotes)))


@lots_bp.route("/api/lots/<int:lot_id>/history", methods=["GET"])
def lot_history_api(lot_id: int):
    records = _unwrap(_services().lots.lot_history(get_db(), lot_id))
    return jsonify({"items": [record.to_dict() for record in records]})


@lots_bp.route("/api/lots/<int:lot_id>/operator", methods=["POST"])
def lot_operator_api(lot_id: int):
    lot = _unwrap(_services().lots.assign_operator(get_db(), lot_id, _text(_payload(), "operator_id") or ""))
    return _item(lot)


@lots_bp.route("/api/lots/<int:lot_id>/examination-start", methods=["POST"])
def lot_examination_start_api(lot_id: int):
    date = _parse_datetime(_payload(), "examination_start_date", required=True)
    return _item(_unwrap(_services().lots.set_examination_start_date(get_db(), lot_id, date)))


@lots_bp.route("/api/lots/<int:lot_id>/state", methods=["POST"])
def lot_state_api(lot_id: int):
    payload = _payload()
    requested = _text(payload, "state")
    if not requested:
        raise _invalid("state", "field_required")
    record = _unwrap(_services().lots.change_state(get_db(), lot_id, requested, reason=_text(payload, "reason")))
    return _state_change(record)


@lots_bp.route("/api/lots/<int:lot_id>/reject", methods=["POST"])
def lot_reject_api(lot_id: int):
    record = _unwrap(_services().lots.reject(get_db(), lot_id, _text(_payload(), "reason") or ""))
    return _state_change(record, "lot_rejected")


@lots_bp.route("/api/lots/<int:lot_id>/evaluation/<string:phase>", methods=["PUT"])
def lot_evaluation_api(lot_id: int, phase: str):
    services = _services()
    if phase == "technical":
        operation = services.lots.record_technical_evaluation
    elif phase == "economic":
        operation = services.lots.record_economic_evaluation
    else:
        raise _invalid("phase")
    payload = _payload()
    evaluation = _unwrap(
        operation(
            get_db(),
            lot_id,
            _text(payload, "evaluator_id") or "",
            _parse_tri_state(payload, "approved"),
            _text(payload, "reason"),
            _text(payload, "notes"),
        )
    )
    return _item(evaluation, message_key="evaluation_saved")


@lots_bp.route("/api/lots/<int:lot_id>/price-elaboration", methods=["PUT"])
def lot_price_elaboration_api(lot_id: int):
    payload = _payload()
    elaboration = _unwrap(
        _services().lots.record_price_elaboration(
            get_db(),
            lot_id,
            _parse_money(payload, "desired_price"),
            _parse_money(payload, "actual_exit_price"),
            _text(payload, "adaptation_rationale"),
        )
    )
    return _item(elaboration, message_key="price_elaboration_saved")


@lots_bp.route("/api/lots/<int:lot_id>/participants", methods=["POST"])
def lot_participants_api(lot_id: int):
    payload = _payload()
    participant = _unwrap(
        _services().lots.add_participant(
            get_db(),
            lot_id,
            subject_id=_text(payload, "subject_id"),
            company_name=_text(payload, "company_name"),
            economic_offer=_parse_money(payload, "economic_offer"),
            is_awardee=_parse_flag(payload, "is_awardee"),
            is_rejected_by_authority=_parse_flag(payload, "is_rejected_by_authority"),
        )
    )
    return _item(participant, 201)


@lots_bp.route("/api/lots/<int:lot_id>/awardee", methods=["POST"])
def lot_awardee_api(lot_id: int):
    participant_id = _parse_optional_int(_payload(), "participant_id")
    if participant_id is None:
        raise _invalid("participant_id", "field_required")
    participant = _unwrap(_services().lots.set_awardee(get_db(), lot_id, participant_id))
    return _item(participant, message_key="awardee_set")


@lots_bp.route("/api/participants/<int:participant_id>/reject", methods=["POST"])
def participant_reject_api(participant_id: int):
    return _item(_unwrap(_services().lots.mark_participant_rejected(get_db(), participant_id)))


@lots_bp.route("/api/lots/<int:lot_id>/clarifications", methods=["POST"])
def lot_clarifications_api(lot_id: int):
    payload = _payload()
    clarification = _unwrap(
        _services().lots.open_clarification_request(
            get_db(),
            lot_id,
            _text(payload, "request_text") or "",
            _parse_datetime(payload, "request_date"),
        )
    )
    return _item(clarification, 201)


@lots_bp.route("/api/clarifications/<int:request_id>/response", methods=["POST"])
def clarification_response_api(request_id: int):
    payload = _payload()
    clarification = _unwrap(
        _services().lots.respond_to_clarification_request(
            get_db(),
            request_id,
            _text(payload, "response_text") or "",
            _parse_datetime(payload, "response_date"),
            _text(payload, "responder_id"),
        )
    )
    return _item(clarification)


@lots_bp.route("/api/clarifications/<int:request_id>/close", methods=["POST"])
def clarification_close_api(request_id: int):
    payload = _payload()
    closure = _unwrap(
        _services().lots.close_clarification_request(
            get_db(),
            request_id,
            _text(payload, "response_text"),
            _parse_datetime(payload, "response_date"),
            _text(payload, "responder_id"),
        )
    )
    return jsonify(
        {
            "item": record_to_dict(closure.request),
            "open_requests": closure.open_requests,
            "gate_satisfied": closure.gate_satisfied,
            "state_change": closure.state_change.to_dict() if closure.state_change else None,
            "message": success_message("clarification_closed"),
        }
    )


@lots_bp.route("/api/lots/<int:lot_id>/quotes", methods=["GET", "POST"])
def lot_quotes_api(lot_id: int):
    services = _services()
    db = get_db()
    if request.method == "POST":
        payload = _payload()
        quote = _unwrap(
            services.quotes.request_quote(
                db,
                lot_id,
                _text(payload, "supplier_id") or "",
                _parse_datetime(payload, "expiry_date", required=True),
                request_date=_parse_datetime(payload, "request_date"),
                description=_text(payload, "description") or "",
                auto_renewal_days=_parse_optional_int(payload, "auto_renewal_days"),
            )
        )
        return _item(quote, 201)
    quotes = _unwrap(services.quotes.list_for_lot(db, lot_id))
    return jsonify({"items": [record_to_dict(item) for item in quotes]})


@lots_bp.route("/api/quotes/<int:quote_id>", methods=["GET", "DELETE"])
def quote_api(quote_id: int):
    services = _services()
    db = get_db()
    if request.method == "DELETE":
        _unwrap(services.quotes.delete_quote(db, quote_id))
        return "", 204
    return _item(_unwrap(services.quotes.get_quote(db, quote_id)))


@lots_bp.route("/api/quotes/<int:quote_id>/receipt", methods=["POST"])
def quote_receipt_api(quote_id: int):
    payload = _payload()
    quote = _unwrap(
        _services().quotes.confirm_receipt(
            get_db(),
            quote_id,
            _parse_datetime(payload, "received_date"),
            _parse_money(payload, "offered_amount"),
        )
    )
    return _item(quote)


@lots_bp.route("/api/quotes/<int:quote_id>/validate", methods=["POST"])
def quote_validate_api(quote_id: int):
    return _item(_unwrap(_services().quotes.validate_quote(get_db(), quote_id)))


@lots_bp.route("/api/quotes/<int:quote_id>/toggle-selected", methods=["POST"])
def quote_toggle_api(quote_id: int):
    return _item(_unwrap(_services().quotes.toggle_selected(get_db(), quote_id)))


@lots_bp.route("/api/quotes/<int:quote_id>/select", methods=["POST"])
def quote_select_api(quote_id: int):
    return _item(_unwrap(_services().quotes.select_exclusive(get_db(), quote_id)), message_key="quote_selected")
