# Overview: Flask API routes for the offline sync queue (enqueue, drain, inspection).

# backend/tillpoint/routes/sync.py
from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..errors import PosError, ValidationError, error_response
from ..identity import SUPERVISOR_ROLES
from ..models.sync import SYNC_CATALOG_PATCH, SYNC_REFUND, SYNC_STOCK_ENTRY
from ..services.wiring import build_components


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")

# Item types a cashier may not record, even offline
_SUPERVISOR_TYPES = [SYNC_STOCK_ENTRY, SYNC_REFUND, SYNC_CATALOG_PATCH]


@sync_bp.post("")
@require_actor()
def enqueue_route():
    """
    Upload mutations recorded while offline.

    Body: {"items": [{"type", "payload", "idempotency_key"?, "max_retries"?}]}
    (the "syncItems"/"data"/"id" spelling of older clients is accepted too).

    Items are persisted and drained in the background; the response only
    says which items were accepted. Re-uploading an item with a known
    idempotency key returns the existing item.
    """
    try:
        data = request.get_json(silent=True) or {}
        items = data.get("items", data.get("syncItems"))
        if not isinstance(items, list) or not items:
            raise ValidationError("Sync items array is required", details={"field": "items"})

        queue = build_components().sync_queue
        accepted = []
        rejected = []
        for index, raw in enumerate(items):
            try:
                if not isinstance(raw, dict):
                    raise ValidationError("Sync item must be an object")
                item_type = raw.get("type")
                if item_type in _SUPERVISOR_TYPES and not g.actor.is_supervisor:
                    raise ValidationError(f"Role {g.actor.role} cannot record {item_type} items")

                key = raw.get("idempotency_key") or raw.get("id")
                item, created = queue.enqueue(
                    item_type,
                    raw.get("payload", raw.get("data")),
                    g.actor,
                    idempotency_key=str(key) if key is not None else None,
                    max_retries=raw.get("max_retries"),
                )
                accepted.append({"index": index, "created": created, "item": item.to_dict()})
            except ValidationError as e:
                rejected.append({"index": index, **e.to_dict()})

        status = 202 if accepted else 400
        return jsonify({"accepted": accepted, "rejected": rejected}), status

    except PosError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to enqueue sync items")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.get("/status")
@require_actor(SUPERVISOR_ROLES)
def status_route():
    try:
        return jsonify({"counts": build_components().sync_queue.status_counts()}), 200
    except Exception:
        current_app.logger.exception("Failed to read sync status")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.post("/drain")
@require_actor(SUPERVISOR_ROLES)
def drain_route():
    """
    Run one drain pass now.

    Returns 409 when another pass (worker, CLI or request) is already running.
    """
    try:
        limit = request.args.get("limit", type=int)
        report = build_components().sync_queue.drain(limit)
        if report is None:
            return jsonify({"error": "A drain pass is already running"}), 409
        return jsonify({"report": report.to_dict()}), 200
    except Exception:
        current_app.logger.exception("Sync drain failed")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.get("/dead-letters")
@require_actor(SUPERVISOR_ROLES)
def dead_letters_route():
    try:
        limit = min(request.args.get("limit", 100, type=int), 500)
        items = build_components().sync_queue.dead_letters(limit)
        return jsonify({"items": [i.to_dict() for i in items], "count": len(items)}), 200
    except Exception:
        current_app.logger.exception("Failed to list dead letters")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.post("/<int:item_id>/requeue")
@require_actor(SUPERVISOR_ROLES)
def requeue_route(item_id: int):
    try:
        item = build_components().sync_queue.requeue(item_id)
        return jsonify({"item": item.to_dict()}), 200
    except PosError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to requeue sync item")
        return jsonify({"error": "Internal server error"}), 500
