"""
Run data migrations against the configured document store.

    FLASK_ENV=production python init_db.py
    MIGRATE_UIDS=uid1,uid2 python init_db.py   # limit to specific users
"""
import importlib.util
import os
import sys

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from wattle import create_app
from wattle.context import get_services

MIGRATIONS = ["001_canonical_profiles", "002_fhir_layout"]


def load_migration(name):
    migration_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "migrations", f"{name}.py")
    spec = importlib.util.spec_from_file_location(f"migration_{name}", migration_path)
    migration = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(migration)
    return migration


def init_db(app=None):
    """Apply every migration in order; returns {name: count}"""
    app = app or create_app(os.getenv("FLASK_ENV", "production"))
    uids = [u.strip() for u in os.getenv("MIGRATE_UIDS", "").split(",") if u.strip()] or None
    results = {}
    with app.app_context():
        store = get_services().store
        for name in MIGRATIONS:
            app.logger.info(f"Running migration {name}...")
            results[name] = load_migration(name).upgrade(store, uids=uids)
            app.logger.info(f"Migration {name} complete: {results[name]}")
    return results


if __name__ == "__main__":
    print(init_db())
