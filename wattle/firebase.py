"""
Firebase Admin initialization
"""
import logging

import firebase_admin
from firebase_admin import credentials

logger = logging.getLogger(__name__)

APP_NAME = "wattle"


def get_firebase_app(config):
    """Return the named firebase-admin app, initializing it on first use"""
    try:
        return firebase_admin.get_app(APP_NAME)
    except ValueError:
        pass

    cred_path = (config.get("FIREBASE_CREDENTIALS") or "").strip()
    cred = credentials.Certificate(cred_path) if cred_path else credentials.ApplicationDefault()

    options = {}
    if config.get("FIREBASE_PROJECT_ID"):
        options["projectId"] = config["FIREBASE_PROJECT_ID"]
    if config.get("FIREBASE_STORAGE_BUCKET"):
        options["storageBucket"] = config["FIREBASE_STORAGE_BUCKET"]

    fb_app = firebase_admin.initialize_app(cred, options, name=APP_NAME)
    logger.info(f"Firebase initialized for project {options.get('projectId') or '(default)'}")
    return fb_app
