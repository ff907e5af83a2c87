"""
User scoped FHIR resource store.

Resources live at ``users/{uid}/fhir/{resourceType}/resources/{id}``. The
``users/{uid}/fhir/{resourceType}`` document records that the user holds
resources of that type so they can be enumerated.
"""
import logging
import re
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import NotFoundError, ValidationError
from ..store import DocumentStore, now_utc_iso
from .query import DEFAULT_COUNT, translate

logger = logging.getLogger(__name__)

RESOURCE_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]{0,63}$")
RESOURCE_ID_RE = re.compile(r"^[A-Za-z0-9\-\.]{1,64}$")

LAB_RESOURCE_TYPES = ("Observation", "DiagnosticReport")


def new_resource_id() -> str:
    return uuid.uuid4().hex[:16]


def reference(resource_type: str, resource_id: str) -> str:
    return f"{resource_type}/{resource_id}"


def build_bundle(resource_type: str, items: List[Tuple[str, Dict[str, Any]]]) -> Dict[str, Any]:
    entries = [{"resource": doc, "fullUrl": reference(resource_type, doc_id)} for doc_id, doc in items]
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": len(entries),
        "entry": entries,
    }


def check_resource_type(resource_type: str) -> str:
    if not RESOURCE_TYPE_RE.match(resource_type or ""):
        raise ValidationError(f"Invalid resource type: {resource_type}")
    return resource_type


def check_resource_id(resource_id: str) -> str:
    if not RESOURCE_ID_RE.match(str(resource_id or "")):
        raise ValidationError(f"Invalid resource id: {resource_id}")
    return str(resource_id)


def validate_resource(resource: Any, resource_type: str) -> Dict[str, Any]:
    if not resource or not isinstance(resource, dict):
        raise ValidationError("Resource cannot be empty")
    if not resource.get("resourceType"):
        raise ValidationError("Resource must have a resourceType")
    if resource["resourceType"] != resource_type:
        raise ValidationError(
            f"Resource type mismatch: expected {resource_type}, got {resource['resourceType']}"
        )
    return resource


def next_version(meta: Optional[Dict[str, Any]]) -> str:
    try:
        current = int((meta or {}).get("versionId") or 0)
    except (TypeError, ValueError):
        current = 0
    return str(current + 1)


class FHIRService:
    def __init__(self, store: DocumentStore, default_count: int = DEFAULT_COUNT):
        self.store = store
        self.default_count = default_count

    def _types_path(self, uid: str) -> str:
        return f"users/{uid}/fhir"

    def _collection(self, uid: str, resource_type: str) -> str:
        return f"users/{uid}/fhir/{check_resource_type(resource_type)}/resources"

    def _path(self, uid: str, resource_type: str, resource_id: str) -> str:
        return f"{self._collection(uid, resource_type)}/{check_resource_id(resource_id)}"

    # --- CRUD ---

    def create(self, uid: str, resource_type: str, resource: Any) -> Dict[str, Any]:
        check_resource_type(resource_type)
        resource = validate_resource(resource, resource_type)
        resource = dict(resource)
        resource["id"] = check_resource_id(resource.get("id") or new_resource_id())
        resource["meta"] = {**(resource.get("meta") or {}), "lastUpdated": now_utc_iso()}

        self.store.set(self._path(uid, resource_type, resource["id"]), resource)
        self.store.set(
            f"{self._types_path(uid)}/{resource_type}",
            {"resourceType": resource_type, "updatedAt": resource["meta"]["lastUpdated"]},
            merge=True,
        )
        logger.info(f"Created {resource_type}/{resource['id']}")
        return resource

    def import_resource(self, uid: str, resource: Dict[str, Any], resource_id: Optional[str] = None) -> str:
        """Store a resource as-is, keeping its meta; used by data migrations"""
        resource_type = check_resource_type(resource.get("resourceType"))
        resource = dict(resource)
        resource["id"] = check_resource_id(resource.get("id") or resource_id or new_resource_id())
        self.store.set(self._path(uid, resource_type, resource["id"]), resource)
        self.store.set(
            f"{self._types_path(uid)}/{resource_type}",
            {"resourceType": resource_type, "updatedAt": now_utc_iso()},
            merge=True,
        )
        return reference(resource_type, resource["id"])

    def read(self, uid: str, resource_type: str, resource_id: str) -> Dict[str, Any]:
        doc = self.store.get(self._path(uid, resource_type, resource_id))
        if doc is None:
            raise NotFoundError(f"{resource_type}/{resource_id} not found")
        return doc

    def search(self, uid: str, resource_type: str, params: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
        """Run a search; an ``_id`` parameter returns the single resource"""
        search = translate(params, resource_type, default_count=self.default_count)
        if search.is_point_lookup:
            return self.read(uid, resource_type, search.point_id)
        items = self.store.query(self._collection(uid, resource_type), search.plan)
        return build_bundle(resource_type, items)

    def update(self, uid: str, resource_type: str, resource: Any, resource_id: Optional[str] = None) -> Dict[str, Any]:
        check_resource_type(resource_type)
        resource = dict(validate_resource(resource, resource_type))
        if not resource.get("id"):
            raise ValidationError("Resource ID is required for updates")
        if resource_id is not None and str(resource["id"]) != str(resource_id):
            raise ValidationError(f"Resource ID mismatch: expected {resource_id}, got {resource['id']}")

        path = self._path(uid, resource_type, resource["id"])
        existing = self.store.get(path)
        if existing is None:
            raise NotFoundError(f"{resource_type}/{resource['id']} not found")

        resource["meta"] = {
            **(resource.get("meta") or {}),
            "lastUpdated": now_utc_iso(),
            "versionId": next_version(existing.get("meta")),
        }
        self.store.set(path, resource)
        return resource

    def delete(self, uid: str, resource_type: str, resource_id: Optional[str]) -> None:
        if not resource_id:
            raise ValidationError("Resource ID is required for deletion")
        if not self.store.delete(self._path(uid, resource_type, resource_id)):
            raise NotFoundError(f"{resource_type}/{resource_id} not found")

    # --- Enumeration ---

    def resource_types(self, uid: str) -> List[str]:
        return sorted(doc_id for doc_id, _ in self.store.list(self._types_path(uid)))

    def all_resources(self, uid: str, resource_types: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for rtype in (resource_types or self.resource_types(uid)):
            for _, doc in self.store.list(self._collection(uid, rtype)):
                out.append(doc)
        return out

    # --- Cleanup ---

    def find_orphaned(self, uid: str, records: List[Dict[str, Any]]) -> List[str]:
        """References of resources no record lists in fhirResourceIds"""
        referenced = set()
        for rec in records:
            for ref in rec.get("fhirResourceIds") or []:
                referenced.add(str(ref))
        orphaned = []
        for rtype in self.resource_types(uid):
            for doc_id, _ in self.store.list(self._collection(uid, rtype)):
                ref = reference(rtype, doc_id)
                if ref not in referenced:
                    orphaned.append(ref)
        return orphaned

    def delete_references(self, uid: str, refs: Iterable[str]) -> int:
        deleted = 0
        for ref in refs:
            rtype, _, rid = ref.partition("/")
            if self.store.delete(self._path(uid, rtype, rid)):
                deleted += 1
        return deleted

    def delete_types(self, uid: str, resource_types: Iterable[str]) -> List[str]:
        """Delete every resource of the given types; returns the deleted references"""
        deleted = []
        for rtype in resource_types:
            for doc_id, _ in self.store.list(self._collection(uid, rtype)):
                if self.store.delete(self._path(uid, rtype, doc_id)):
                    deleted.append(reference(rtype, doc_id))
            self.store.delete(f"{self._types_path(uid)}/{rtype}")
        return deleted

    def delete_lab_reports(self, uid: str) -> List[str]:
        return self.delete_types(uid, LAB_RESOURCE_TYPES)

    def delete_all(self, uid: str) -> List[str]:
        return self.delete_types(uid, self.resource_types(uid))
