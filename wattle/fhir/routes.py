"""
FHIR API Blueprint

    /api/fhir/<resourceType>        GET (search, or read with _id), POST, PUT, DELETE (?_id=)
    /api/fhir/<resourceType>/<id>   GET, PUT, DELETE
    /api/fhir/cleanup               POST {"operation": ...}
"""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ..context import get_services
from ..errors import ValidationError
from ..records import list_records, strip_fhir_references

fhir_bp = Blueprint("fhir", __name__, url_prefix="/api/fhir")


@fhir_bp.route("/cleanup", methods=["POST"])
@login_required
def cleanup():
    uid = current_user.id
    fhir = get_services().fhir
    body = request.get_json(silent=True) or {}
    operation = body.get("operation") or ""
    if not isinstance(operation, str):
        raise ValidationError("Operation must be a string")
    operation = operation.strip()
    if not operation:
        raise ValidationError("Operation parameter is required")

    if operation == "find_orphaned":
        orphaned = fhir.find_orphaned(uid, list_records(get_services().store, uid))
        return jsonify({"success": True, "orphanedResources": orphaned, "count": len(orphaned)}), 200

    if operation == "delete_orphaned":
        orphaned = fhir.find_orphaned(uid, list_records(get_services().store, uid))
        if not orphaned:
            return jsonify({"success": True, "message": "No orphaned resources found to delete.", "deletedCount": 0}), 200
        deleted = fhir.delete_references(uid, orphaned)
        message = f"Successfully deleted {deleted} orphaned FHIR resources."
    elif operation == "delete_lab_reports":
        refs = fhir.delete_lab_reports(uid)
        strip_fhir_references(get_services().store, uid, refs)
        deleted = len(refs)
        message = f"Successfully deleted {deleted} laboratory-related resources."
    elif operation == "delete_all_fhir":
        refs = fhir.delete_all(uid)
        strip_fhir_references(get_services().store, uid, refs)
        deleted = len(refs)
        message = f"Successfully deleted {deleted} FHIR resources."
    else:
        raise ValidationError(f"Unknown operation: {operation}")

    current_app.logger.info(f"FHIR cleanup {operation}: {deleted} deleted")
    return jsonify({"success": True, "message": message, "deletedCount": deleted}), 200


@fhir_bp.route("/<resource_type>", methods=["GET"])
@login_required
def search_resources(resource_type):
    result = get_services().fhir.search(current_user.id, resource_type, request.args.items(multi=True))
    return jsonify(result), 200


@fhir_bp.route("/<resource_type>", methods=["POST"])
@login_required
def create_resource(resource_type):
    resource = get_services().fhir.create(current_user.id, resource_type, request.get_json(silent=True))
    return jsonify(resource), 201


@fhir_bp.route("/<resource_type>", methods=["PUT"])
@login_required
def update_resource(resource_type):
    resource = get_services().fhir.update(current_user.id, resource_type, request.get_json(silent=True))
    return jsonify(resource), 200


@fhir_bp.route("/<resource_type>", methods=["DELETE"])
@login_required
def delete_resource(resource_type):
    get_services().fhir.delete(current_user.id, resource_type, (request.args.get("_id") or "").strip())
    return "", 204


@fhir_bp.route("/<resource_type>/<resource_id>", methods=["GET"])
@login_required
def read_resource(resource_type, resource_id):
    return jsonify(get_services().fhir.read(current_user.id, resource_type, resource_id)), 200


@fhir_bp.route("/<resource_type>/<resource_id>", methods=["PUT"])
@login_required
def replace_resource(resource_type, resource_id):
    fhir = get_services().fhir
    resource = fhir.update(current_user.id, resource_type, request.get_json(silent=True), resource_id=resource_id)
    return jsonify(resource), 200


@fhir_bp.route("/<resource_type>/<resource_id>", methods=["DELETE"])
@login_required
def delete_resource_by_id(resource_type, resource_id):
    get_services().fhir.delete(current_user.id, resource_type, resource_id)
    return "", 204
