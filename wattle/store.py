"""
Document store adapters.

Data lives under hierarchical paths such as ``users/{uid}/records/{id}``.
Collection paths have an odd number of segments, document paths an even one.
Two backends share the same interface: Firestore for deployments and an
in-memory store for development and tests.
"""
import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from firebase_admin import firestore
from google.api_core.exceptions import NotFound
from google.cloud.firestore import Query
from google.cloud.firestore_v1.base_query import FieldFilter

from .errors import NotFoundError, UpstreamError
from .firebase import get_firebase_app

logger = logging.getLogger(__name__)

Document = Dict[str, Any]

OPERATORS = ("==", ">", "<", ">=", "<=")


@dataclass
class Filter:
    path: str
    op: str
    value: Any


@dataclass
class SortField:
    path: str
    descending: bool = False


@dataclass
class QueryPlan:
    """Filters, ordering and limit to run against one collection"""
    filters: List[Filter] = field(default_factory=list)
    sort: List[SortField] = field(default_factory=list)
    limit: Optional[int] = None


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize(value: Any) -> Any:
    """Convert store-native values (timestamps) into JSON friendly ones"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, dict):
        return {k: normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value]
    return value


def split_path(path: str) -> List[str]:
    parts = [p for p in (path or "").strip("/").split("/") if p]
    if not parts:
        raise ValueError("Empty store path")
    return parts


def _check_collection(path: str) -> List[str]:
    parts = split_path(path)
    if len(parts) % 2 == 0:
        raise ValueError(f"Not a collection path: {path}")
    return parts


def _check_document(path: str) -> List[str]:
    parts = split_path(path)
    if len(parts) % 2 == 1:
        raise ValueError(f"Not a document path: {path}")
    return parts


class DocumentStore:
    """Interface shared by the store backends"""
    backend = "abstract"

    def get(self, path: str) -> Optional[Document]:
        raise NotImplementedError

    def set(self, path: str, data: Document, merge: bool = False) -> None:
        raise NotImplementedError

    def update(self, path: str, data: Document) -> None:
        raise NotImplementedError

    def add(self, collection_path: str, data: Document) -> str:
        raise NotImplementedError

    def delete(self, path: str) -> bool:
        raise NotImplementedError

    def list(self, collection_path: str) -> List[Tuple[str, Document]]:
        raise NotImplementedError

    def query(self, collection_path: str, plan: QueryPlan) -> List[Tuple[str, Document]]:
        raise NotImplementedError

    def close(self) -> None:
        pass


# ============ In-memory backend ============

_MISSING = object()


def get_field(doc: Document, path: str) -> Any:
    """Resolve a dotted field path, returning _MISSING when absent"""
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _kind(value: Any) -> int:
    # Cross-kind ordering: null < bool < number < string < everything else
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1
    if isinstance(value, (int, float)):
        return 2
    if isinstance(value, str):
        return 3
    return 4


def _sort_key(value: Any):
    kind = _kind(value)
    if kind in (1, 2, 3):
        return (kind, value)
    return (kind, repr(value))


def _matches(doc: Document, flt: Filter) -> bool:
    actual = get_field(doc, flt.path)
    if actual is _MISSING:
        return False
    if flt.op == "==":
        return _kind(actual) == _kind(flt.value) and actual == flt.value
    if _kind(actual) != _kind(flt.value) or _kind(actual) not in (1, 2, 3):
        return False
    if flt.op == ">":
        return actual > flt.value
    if flt.op == "<":
        return actual < flt.value
    if flt.op == ">=":
        return actual >= flt.value
    if flt.op == "<=":
        return actual <= flt.value
    raise ValueError(f"Unsupported operator: {flt.op}")


def run_plan(items: List[Tuple[str, Document]], plan: QueryPlan) -> List[Tuple[str, Document]]:
    """Apply a QueryPlan to already loaded documents"""
    out = [(doc_id, doc) for doc_id, doc in items if all(_matches(doc, f) for f in plan.filters)]
    if plan.sort:
        out = [(i, d) for i, d in out if all(get_field(d, s.path) is not _MISSING for s in plan.sort)]
        # Stable sorts applied from the last key to the first
        for s in reversed(plan.sort):
            out.sort(key=lambda item: _sort_key(get_field(item[1], s.path)), reverse=s.descending)
    if plan.limit is not None:
        out = out[: max(0, int(plan.limit))]
    return out


class MemoryStore(DocumentStore):
    """Dict backed store with Firestore-like query semantics"""
    backend = "memory"

    def __init__(self):
        self._docs: Dict[str, Document] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> Optional[Document]:
        key = "/".join(_check_document(path))
        with self._lock:
            doc = self._docs.get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, path: str, data: Document, merge: bool = False) -> None:
        key = "/".join(_check_document(path))
        data = normalize(copy.deepcopy(data))
        with self._lock:
            if merge and key in self._docs:
                merged = dict(self._docs[key])
                merged.update(data)
                self._docs[key] = merged
            else:
                self._docs[key] = data

    def update(self, path: str, data: Document) -> None:
        key = "/".join(_check_document(path))
        data = normalize(copy.deepcopy(data))
        with self._lock:
            if key not in self._docs:
                raise NotFoundError(f"{path} not found")
            self._docs[key].update(data)

    def add(self, collection_path: str, data: Document) -> str:
        parts = _check_collection(collection_path)
        doc_id = uuid.uuid4().hex[:20]
        self.set("/".join(parts + [doc_id]), data)
        return doc_id

    def delete(self, path: str) -> bool:
        key = "/".join(_check_document(path))
        with self._lock:
            return self._docs.pop(key, None) is not None

    def list(self, collection_path: str) -> List[Tuple[str, Document]]:
        parts = _check_collection(collection_path)
        depth = len(parts) + 1
        prefix = "/".join(parts) + "/"
        with self._lock:
            return [
                (key.rsplit("/", 1)[1], copy.deepcopy(doc))
                for key, doc in self._docs.items()
                if key.startswith(prefix) and len(key.split("/")) == depth
            ]

    def query(self, collection_path: str, plan: QueryPlan) -> List[Tuple[str, Document]]:
        return run_plan(self.list(collection_path), plan)


# ============ Firestore backend ============

class FirestoreStore(DocumentStore):
    """Firestore through firebase-admin"""
    backend = "firestore"

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_config(cls, config) -> "FirestoreStore":
        fb_app = get_firebase_app(config)
        return cls(firestore.client(app=fb_app))

    def _doc(self, path: str):
        _check_document(path)
        return self.client.document(path.strip("/"))

    def _col(self, path: str):
        _check_collection(path)
        return self.client.collection(path.strip("/"))

    def get(self, path: str) -> Optional[Document]:
        try:
            snap = self._doc(path).get()
        except Exception as e:
            raise UpstreamError(f"Firestore read failed: {e}")
        if not snap.exists:
            return None
        return normalize(snap.to_dict() or {})

    def set(self, path: str, data: Document, merge: bool = False) -> None:
        try:
            self._doc(path).set(data, merge=merge)
        except Exception as e:
            raise UpstreamError(f"Firestore write failed: {e}")

    def update(self, path: str, data: Document) -> None:
        try:
            self._doc(path).update(data)
        except NotFound:
            raise NotFoundError(f"{path} not found")
        except Exception as e:
            raise UpstreamError(f"Firestore update failed: {e}")

    def add(self, collection_path: str, data: Document) -> str:
        try:
            _, ref = self._col(collection_path).add(data)
        except Exception as e:
            raise UpstreamError(f"Firestore write failed: {e}")
        return ref.id

    def delete(self, path: str) -> bool:
        ref = self._doc(path)
        try:
            if not ref.get().exists:
                return False
            ref.delete()
        except Exception as e:
            raise UpstreamError(f"Firestore delete failed: {e}")
        return True

    def list(self, collection_path: str) -> List[Tuple[str, Document]]:
        try:
            return [(snap.id, normalize(snap.to_dict() or {})) for snap in self._col(collection_path).stream()]
        except Exception as e:
            raise UpstreamError(f"Firestore read failed: {e}")

    def query(self, collection_path: str, plan: QueryPlan) -> List[Tuple[str, Document]]:
        ref = self._col(collection_path)
        for f in plan.filters:
            ref = ref.where(filter=FieldFilter(f.path, f.op, f.value))
        for s in plan.sort:
            ref = ref.order_by(s.path, direction=Query.DESCENDING if s.descending else Query.ASCENDING)
        if plan.limit is not None:
            ref = ref.limit(int(plan.limit))
        try:
            return [(snap.id, normalize(snap.to_dict() or {})) for snap in ref.stream()]
        except Exception as e:
            raise UpstreamError(f"Firestore query failed: {e}")

    def close(self) -> None:
        try:
            self.client.close()
        except Exception as e:
            logger.warning(f"Firestore client close failed: {e}")


def build_store(config) -> DocumentStore:
    backend = (config.get("DOCUMENT_STORE") or "firestore").strip().lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "firestore":
        return FirestoreStore.from_config(config)
    raise ValueError(f"Unknown DOCUMENT_STORE: {backend}")
