"""
Migration: move user profiles onto the user document

Profiles used to be written to several places:
1. users/{uid}/profile/data
2. profile/{uid}

Both are copied into users/{uid}. Fields already on the user document win,
legacy field names are mapped to the current ones. Legacy documents are left
in place so the migration can be re-run safely.
"""
import logging

logger = logging.getLogger(__name__)

LEGACY_FIELDS = {
    "diet": "dietType",
    "exercise": "activityLevel",
    "smoking": "smokingStatus",
    "alcohol": "alcoholConsumption",
}


def legacy_profiles(store, uid):
    for path in (f"users/{uid}/profile/data", f"profile/{uid}"):
        doc = store.get(path)
        if doc:
            yield path, doc


def candidate_uids(store):
    uids = {doc_id for doc_id, _ in store.list("users")}
    uids.update(doc_id for doc_id, _ in store.list("profile"))
    return sorted(uids)


def upgrade(store, uids=None):
    """Returns the number of user documents that gained fields"""
    migrated = 0
    for uid in (uids or candidate_uids(store)):
        current = store.get(f"users/{uid}") or {}
        additions = {}
        for path, legacy in legacy_profiles(store, uid):
            for key, value in legacy.items():
                key = LEGACY_FIELDS.get(key, key)
                if value in (None, "") or key in current or key in additions:
                    continue
                additions[key] = value
            logger.info(f"Merging legacy profile {path}")
        if additions:
            store.set(f"users/{uid}", additions, merge=True)
            migrated += 1
    return migrated
