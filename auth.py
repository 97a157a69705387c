"""
Access control

Two steps run in front of every protected route:

1. authenticate() turns the bearer credential into an email. Credentials are
   either session tokens issued by POST /jwt (HS256, signed with
   JWT_SECRET_KEY) or Firebase ID tokens from the front end.
2. require_roles(operation) loads the caller's user record and admits them
   only if their role is listed for that operation in PERMISSIONS.

Ownership (is this caller the requester / the assigned donor?) depends on the
document being touched and is decided in lifecycle.py, not here.
"""

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import firebase_admin
import jwt
from fastapi import Depends, Request
from firebase_admin import auth as firebase_auth, credentials, exceptions as firebase_exceptions

from config import Config
from database import UserStore, get_user_store
from errors import ApiError, Forbidden, Unauthenticated
from schemas import ROLES

logger = logging.getLogger(__name__)

ALL_ROLES = ROLES

PERMISSIONS = {
    # donation requests
    "list_requests": ALL_ROLES,
    "list_pending_requests": ALL_ROLES,
    "get_pending_request": ALL_ROLES,
    "get_request": ALL_ROLES,
    "create_request": ("donor",),
    "confirm_request": ALL_ROLES,
    "replace_request": ("donor", "admin"),
    "update_request": ALL_ROLES,
    "finalize_request": ALL_ROLES,
    "delete_request": ("donor", "admin"),
    # users
    "list_users": ("volunteer", "admin"),
    "search_users": ALL_ROLES,
    "get_user": ALL_ROLES,
    "update_user": ALL_ROLES,
    "get_user_role": ALL_ROLES,
    "update_user_status": ("admin",),
    "update_user_role": ("admin",),
    # blogs
    "list_blogs": ALL_ROLES,
    "create_blog": ("volunteer", "admin"),
    "publish_blog": ("admin",),
    "unpublish_blog": ("admin",),
    "delete_blog": ("admin",),
}


@dataclass(frozen=True)
class Caller:
    email: str
    role: str
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def same_email(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.strip().lower() == b.strip().lower()


# ---------------- Credential verification -----------------

class TokenVerifier:
    def __init__(self, session_secret: Optional[str] = None, firebase_app=None):
        self.session_secret = session_secret
        self.firebase_app = firebase_app

    def verify(self, token: str) -> str:
        claims = None
        if self.session_secret:
            try:
                claims = jwt.decode(token, self.session_secret, algorithms=["HS256"])
            except jwt.InvalidTokenError:
                claims = None
        if claims is None and self.firebase_app is not None:
            try:
                claims = firebase_auth.verify_id_token(token, app=self.firebase_app)
            except (ValueError, firebase_exceptions.FirebaseError) as e:
                logger.info("Firebase token rejected: %s", e)
                claims = None
        if not claims or not claims.get("email"):
            raise Unauthenticated()
        return claims["email"].lower()


def load_firebase_app(service_key: Optional[str]):
    if not service_key:
        logger.warning("FB_SERVICE_KEY not set, Firebase ID tokens will be rejected")
        return None
    service_account = json.loads(base64.b64decode(service_key).decode("utf-8"))
    return firebase_admin.initialize_app(credentials.Certificate(service_account))


@lru_cache(maxsize=None)
def get_verifier() -> TokenVerifier:
    return TokenVerifier(Config.JWT_SECRET_KEY, load_firebase_app(Config.FB_SERVICE_KEY))


def issue_session_token(email: str) -> str:
    if not Config.JWT_SECRET_KEY:
        raise ApiError("Session tokens are not configured")
    issued = datetime.now(timezone.utc)
    payload = {
        "email": email,
        "iat": issued,
        "exp": issued + timedelta(days=Config.JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, Config.JWT_SECRET_KEY, algorithm="HS256")


# ---------------- Dependencies -----------------

def bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization")
    if header:
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthenticated()
        return token.strip()
    token = request.cookies.get("token")
    if not token:
        raise Unauthenticated()
    return token


def authenticate(request: Request, verifier: TokenVerifier = Depends(get_verifier)) -> str:
    return verifier.verify(bearer_token(request))


def require_roles(operation: str):
    roles = PERMISSIONS[operation]

    def gate(request: Request, email: str = Depends(authenticate), users: UserStore = Depends(get_user_store)) -> Caller:
        user = users.find_by_email(email)
        role = (user or {}).get("role") or "donor"
        if not user or role not in roles:
            logger.info("Denied %s to %s (role=%s)", operation, email, role if user else None)
            raise Forbidden()
        caller = Caller(email=email, role=role, name=user.get("name"))
        request.state.caller = caller.email
        return caller

    return gate
