"""
Records API Blueprint

Records are user uploads (files and/or a comment) stored at
``users/{uid}/records/{recordId}``. Uploaded files go to blob storage and are
analyzed after the response is sent.
"""
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from .context import get_services
from .errors import NotFoundError, UpstreamError, ValidationError
from .store import DocumentStore, QueryPlan, SortField, now_utc_iso

records_bp = Blueprint("records", __name__, url_prefix="/api/records")

SUPPORTED_TYPES = ("application/pdf", "image/jpeg", "image/png")
DEFAULT_RECORD_NAME = "Medical Record"

# Set by the upload flow only; never taken from request bodies
STORAGE_FIELDS = ("id", "paths", "urls", "url", "fileTypes")


def records_path(uid: str) -> str:
    return f"users/{uid}/records"


def record_path(uid: str, record_id: str) -> str:
    return f"{records_path(uid)}/{record_id}"


def holistic_path(uid: str) -> str:
    return f"users/{uid}/analysis/holistic"


def list_records(store: DocumentStore, uid: str) -> List[Dict[str, Any]]:
    """All records, newest first; records without createdAt sort last"""
    items = store.list(records_path(uid))
    dated = store.query(records_path(uid), QueryPlan(sort=[SortField("createdAt", descending=True)]))
    seen = {doc_id for doc_id, _ in dated}
    ordered = dated + [(doc_id, doc) for doc_id, doc in items if doc_id not in seen]
    return [{**doc, "id": doc_id} for doc_id, doc in ordered]


def get_record(store: DocumentStore, uid: str, record_id: str) -> Dict[str, Any]:
    doc = store.get(record_path(uid, record_id))
    if doc is None:
        raise NotFoundError("Record not found")
    return {**doc, "id": record_id}


def owns_path(uid: str, path: str) -> bool:
    """True when a blob path lies inside the user's own storage prefix"""
    parts = str(path or "").split("/")
    return len(parts) > 2 and parts[0] == "users" and parts[1] == uid and "" not in parts and ".." not in parts


def client_fields(body: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in body.items() if k not in STORAGE_FIELDS}


def strip_fhir_references(store: DocumentStore, uid: str, refs: List[str]) -> int:
    """Drop deleted resource references from every record; returns records changed"""
    gone = set(refs)
    changed = 0
    for record in list_records(store, uid):
        ids = list(record.get("fhirResourceIds") or [])
        kept = [ref for ref in ids if ref not in gone]
        if len(kept) != len(ids):
            store.update(record_path(uid, record["id"]), {"fhirResourceIds": kept, "updatedAt": now_utc_iso()})
            changed += 1
    return changed


def mark_holistic_stale(store: DocumentStore, uid: str) -> None:
    store.set(holistic_path(uid), {"needsUpdate": True, "lastRecordAdded": now_utc_iso()}, merge=True)


def safe_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", name or "")


def today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def upload_files(storage, uid: str, record_name: str, files: List[Tuple[str, bytes, str]], batch_size: int = 1, delay: float = 0.1):
    """Upload (filename, data, content_type) triples in sequential batches.

    Failed uploads are skipped. Returns (urls, paths, content types).
    """
    timestamp = int(time.time() * 1000)
    prefix = safe_name(record_name)
    urls: List[str] = []
    paths: List[str] = []
    types: List[str] = []
    batch_size = max(1, int(batch_size))
    for start in range(0, len(files), batch_size):
        if start:
            time.sleep(delay)
        for filename, data, content_type in files[start:start + batch_size]:
            path = f"users/{uid}/records/{prefix}_{timestamp}_{len(urls)}_{safe_name(filename)}"
            try:
                url = storage.upload(path, data, content_type)
            except Exception as e:
                current_app.logger.warning(f"Upload failed for {filename}: {e}")
                continue
            urls.append(url)
            paths.append(path)
            types.append(content_type)
    return urls, paths, types


def start_analysis(app, uid: str, record_id: str) -> None:
    """Analyze a freshly uploaded record off the request thread"""
    from .analysis import analyze_record

    def run():
        with app.app_context():
            try:
                analyze_record(uid, record_id)
            except Exception:
                app.logger.exception(f"Background analysis failed for record {record_id}")

    if not app.config.get("BACKGROUND_ANALYSIS", True):
        run()
        return
    t = threading.Thread(target=run, daemon=True)
    t.start()


@records_bp.route("", methods=["GET"])
@login_required
def list_user_records():
    return jsonify({"records": list_records(get_services().store, current_user.id)}), 200


@records_bp.route("", methods=["POST"])
@login_required
def create_record():
    body = request.get_json(silent=True)
    if not isinstance(body, dict) or not body:
        raise ValidationError("Record data is required")
    data = client_fields(body)
    data["createdAt"] = now_utc_iso()
    record_id = get_services().store.add(records_path(current_user.id), data)
    current_app.logger.info(f"Record {record_id} created")
    return jsonify({"success": True, "recordId": record_id}), 201


@records_bp.route("/<record_id>", methods=["GET"])
@login_required
def read_record(record_id):
    return jsonify({"record": get_record(get_services().store, current_user.id, record_id)}), 200


@records_bp.route("/<record_id>", methods=["PUT"])
@login_required
def update_record(record_id):
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Record data is required")
    store = get_services().store
    data = client_fields(body)
    data["updatedAt"] = now_utc_iso()
    store.update(record_path(current_user.id, record_id), data)
    return jsonify({"success": True, "record": get_record(store, current_user.id, record_id)}), 200


@records_bp.route("/<record_id>", methods=["DELETE"])
@login_required
def delete_record(record_id):
    services = get_services()
    uid = current_user.id
    record = get_record(services.store, uid, record_id)
    for path in record.get("paths") or []:
        if not owns_path(uid, path):
            current_app.logger.warning(f"Skipping stored file outside user storage: {path}")
            continue
        try:
            services.storage.delete(path)
        except Exception as e:
            current_app.logger.warning(f"Could not delete stored file {path}: {e}")
    services.store.delete(record_path(uid, record_id))
    mark_holistic_stale(services.store, uid)
    return jsonify({"success": True}), 200


@records_bp.route("/upload", methods=["POST"])
@login_required
def upload_record():
    services = get_services()
    uid = current_user.id
    files = request.files.getlist("files[]") or request.files.getlist("files")
    files = [f for f in files if f and (f.filename or "").strip()]
    record_name = (request.form.get("recordName") or "").strip() or DEFAULT_RECORD_NAME
    comment = request.form.get("comment") or ""

    if not files and not comment.strip():
        raise ValidationError("Please select at least one file to upload or provide a comment")

    if not files:
        record = {
            "name": record_name,
            "comment": comment,
            "urls": [],
            "paths": [],
            "fileTypes": [],
            "fileCount": 0,
            "isMultiFile": False,
            "createdAt": now_utc_iso(),
            "analysis": "This is a comment-only record.",
            "briefSummary": "Comment-only record",
            "detailedAnalysis": "This record contains only a comment without any attached files.",
            "recordType": record_name,
            "recordDate": today(),
            "analysisInProgress": False,
        }
        record_id = services.store.add(records_path(uid), record)
        mark_holistic_stale(services.store, uid)
        return jsonify({"success": True, "recordId": record_id, "fileUrls": []}), 200

    if any((f.mimetype or "") not in SUPPORTED_TYPES for f in files):
        raise ValidationError("Only PDF, JPG, and PNG files are supported")
    max_files = int(current_app.config.get("UPLOAD_MAX_FILES", 20))
    if len(files) > max_files:
        raise ValidationError(f"Maximum of {max_files} files can be uploaded at once")

    payload = [(f.filename, f.read(), f.mimetype) for f in files]
    urls, paths, types = upload_files(
        services.storage,
        uid,
        record_name,
        payload,
        batch_size=current_app.config.get("UPLOAD_BATCH_SIZE", 1),
        delay=float(current_app.config.get("UPLOAD_BATCH_DELAY", 0.1)),
    )
    if not urls:
        raise UpstreamError("Failed to upload files: Failed to upload any files. Please try again.")

    record = {
        "name": record_name,
        "comment": comment,
        "urls": urls,
        "paths": paths,
        "fileTypes": types,
        "fileCount": len(urls),
        "isMultiFile": len(urls) > 1,
        "createdAt": now_utc_iso(),
        "recordType": record_name,
        "recordDate": today(),
        "analysisInProgress": True,
    }
    if len(urls) == 1:
        record["url"] = urls[0]
    record_id = services.store.add(records_path(uid), record)
    mark_holistic_stale(services.store, uid)
    current_app.logger.info(f"Record {record_id} uploaded with {len(urls)} file(s)")

    auto_analyze = (request.form.get("auto_analyze") or "1").strip().lower() in {"1", "true", "yes", "on"}
    if auto_analyze:
        start_analysis(current_app._get_current_object(), uid, record_id)

    return jsonify({"success": True, "recordId": record_id, "fileUrls": urls}), 200
