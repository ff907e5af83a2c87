"""
Migration: move FHIR resources into users/{uid}/fhir/{type}/resources/{id}

Legacy layouts:
1. users/{uid}/fhir_resources/{Type}_{id}
2. patients/{uid}/{Type}/{id}  (patient id doubles as the user id)

Flat documents are removed once copied. Patient collections are left alone
because older clients may still read them.
"""
import logging

from wattle.errors import ValidationError
from wattle.fhir.service import FHIRService

logger = logging.getLogger(__name__)

PATIENT_RESOURCE_TYPES = [
    "Observation",
    "DiagnosticReport",
    "Condition",
    "MedicationStatement",
    "AllergyIntolerance",
    "Immunization",
    "Procedure",
]


def migrate_flat(store, fhir, uid):
    moved = 0
    for doc_id, doc in store.list(f"users/{uid}/fhir_resources"):
        rtype, _, rid = doc_id.partition("_")
        resource = dict(doc)
        resource.setdefault("resourceType", rtype)
        try:
            fhir.import_resource(uid, resource, resource_id=rid or None)
        except ValidationError as e:
            logger.warning(f"Skipping users/{uid}/fhir_resources/{doc_id}: {e.message}")
            continue
        store.delete(f"users/{uid}/fhir_resources/{doc_id}")
        moved += 1
    return moved


def migrate_patient(store, fhir, pid):
    moved = 0
    for rtype in PATIENT_RESOURCE_TYPES:
        for doc_id, doc in store.list(f"patients/{pid}/{rtype}"):
            resource = dict(doc)
            resource.setdefault("resourceType", rtype)
            try:
                fhir.import_resource(pid, resource, resource_id=doc_id)
            except ValidationError as e:
                logger.warning(f"Skipping patients/{pid}/{rtype}/{doc_id}: {e.message}")
                continue
            moved += 1
    return moved


def upgrade(store, uids=None):
    """Returns the number of resources moved"""
    fhir = FHIRService(store)
    moved = 0
    for uid in (uids or [doc_id for doc_id, _ in store.list("users")]):
        moved += migrate_flat(store, fhir, uid)
    for pid, _ in store.list("patients"):
        if uids and pid not in uids:
            continue
        moved += migrate_patient(store, fhir, pid)
    return moved
