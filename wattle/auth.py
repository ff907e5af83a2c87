"""
Bearer token authentication
"""
import logging
from typing import Dict, Optional

from firebase_admin import auth as firebase_auth
from flask import request
from flask_login import LoginManager, UserMixin, current_user

from .context import get_services
from .errors import ForbiddenError, UnauthorizedError, UpstreamError, ValidationError
from .firebase import get_firebase_app

logger = logging.getLogger(__name__)

login_manager = LoginManager()


class User(UserMixin):
    """Authenticated caller, identified by the verifier's user id"""

    def __init__(self, uid: str):
        self.id = uid


class StaticTokenVerifier:
    """Fixed token -> user id table, for development and tests"""

    def __init__(self, tokens: Dict[str, str]):
        self.tokens = dict(tokens or {})

    def verify(self, token: str) -> Optional[str]:
        return self.tokens.get(token)


class FirebaseTokenVerifier:
    """Verify Firebase ID tokens with firebase-admin"""

    def __init__(self, fb_app=None, clock_skew_seconds: int = 60):
        self.fb_app = fb_app
        self.clock_skew_seconds = clock_skew_seconds

    def verify(self, token: str) -> Optional[str]:
        try:
            decoded = firebase_auth.verify_id_token(token, app=self.fb_app, clock_skew_seconds=self.clock_skew_seconds)
        except firebase_auth.CertificateFetchError as e:
            raise UpstreamError(f"Could not fetch token certificates: {e}")
        except (ValueError, firebase_auth.InvalidIdTokenError) as e:
            logger.warning(f"Token verification failed: {type(e).__name__}")
            return None
        return decoded.get("uid")


def build_verifier(config):
    backend = (config.get("AUTH_BACKEND") or "firebase").strip().lower()
    if backend == "static":
        return StaticTokenVerifier(config.get("STATIC_AUTH_TOKENS") or {})
    if backend == "firebase":
        return FirebaseTokenVerifier(get_firebase_app(config), int(config.get("AUTH_CLOCK_SKEW", 60)))
    raise ValueError(f"Unknown AUTH_BACKEND: {backend}")


def bearer_token(header: Optional[str]) -> str:
    header = (header or "").strip()
    if not header.startswith("Bearer "):
        return ""
    return header[len("Bearer "):].strip()


def init_auth(app):
    """Initialize authentication"""
    login_manager.init_app(app)
    login_manager.session_protection = None


@login_manager.request_loader
def load_user_from_request(req):
    token = bearer_token(req.headers.get("Authorization"))
    if not token:
        return None
    uid = get_services().verifier.verify(token)
    return User(uid) if uid else None


@login_manager.unauthorized_handler
def unauthorized():
    if not bearer_token(request.headers.get("Authorization")):
        raise UnauthorizedError("Unauthorized: Missing or invalid authorization header")
    raise UnauthorizedError("Unauthorized: Invalid token")


def resolve_user_id(requested: Optional[str] = None) -> str:
    """The caller's user id; a requested id must name the same user"""
    uid = current_user.id
    if requested is not None and not isinstance(requested, str):
        raise ValidationError("userId must be a string")
    requested = (requested or "").strip()
    if requested and requested != uid:
        raise ForbiddenError("Forbidden: You do not have permission to access this resource")
    return uid
