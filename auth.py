import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from pydantic import BaseModel
from pymongo.errors import PyMongoError

import settings
from errors import AuthError, DataServiceError
from schemas import AuthUser

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"


class AuthSession(BaseModel):
    access_token: str
    user: AuthUser
    expires_at: datetime


AuthListener = Callable[[str, Optional[AuthSession]], None]


# -------------------- Helpers --------------------

def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return secrets.compare_digest(h, expected_hash)


def _as_utc(value: datetime) -> datetime:
    # the driver hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Subscription:
    def __init__(self, listeners: List[AuthListener], callback: AuthListener):
        self._listeners = listeners
        self._callback = callback

    def unsubscribe(self) -> None:
        if self._callback in self._listeners:
            self._listeners.remove(self._callback)


# -------------------- Auth service --------------------

class AuthService:
    """Token sessions on the ``user`` collection.

    Sign-in and sign-out broadcast ``SIGNED_IN`` / ``SIGNED_OUT`` to the
    callbacks registered with ``on_auth_state_change``.
    """

    def __init__(self, db, token_ttl_days: int = settings.TOKEN_TTL_DAYS):
        self._db = db
        self._ttl = timedelta(days=token_ttl_days)
        self._listeners: List[AuthListener] = []

    @property
    def users(self):
        if self._db is None:
            raise DataServiceError("Database is not configured")
        return self._db["user"]

    def _notify(self, event: str, session: Optional[AuthSession]) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, session)
            except Exception:
                logger.exception("Auth state listener failed on %s", event)

    def on_auth_state_change(self, callback: AuthListener) -> Subscription:
        self._listeners.append(callback)
        return Subscription(self._listeners, callback)

    def sign_up(self, name: str, email: str, password: str) -> AuthUser:
        try:
            if self.users.find_one({"email": email}):
                raise AuthError("Email already registered")
            pw_hash, salt = hash_password(password)
            now = datetime.now(timezone.utc)
            inserted_id = self.users.insert_one({
                "name": name,
                "email": email,
                "password_hash": pw_hash,
                "salt": salt,
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            }).inserted_id
        except PyMongoError as e:
            raise DataServiceError(f"sign up failed: {e}") from e
        return AuthUser(id=str(inserted_id), email=email, name=name)

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        try:
            user = self.users.find_one({"email": email})
            if not user or not user.get("is_active", True):
                raise AuthError("Invalid credentials")
            if not verify_password(password, user.get("salt", ""), user.get("password_hash", "")):
                raise AuthError("Invalid credentials")
            token = secrets.token_urlsafe(32)
            expires = datetime.now(timezone.utc) + self._ttl
            self.users.update_one({"_id": user["_id"]}, {"$set": {"token": token, "token_expires": expires}})
        except PyMongoError as e:
            raise DataServiceError(f"sign in failed: {e}") from e
        session = AuthSession(
            access_token=token,
            user=AuthUser(id=str(user["_id"]), email=user["email"], name=user.get("name", "")),
            expires_at=expires,
        )
        logger.info("User %s signed in", session.user.id)
        self._notify(SIGNED_IN, session)
        return session

    def get_session(self, token: Optional[str]) -> Optional[AuthSession]:
        if not token:
            return None
        try:
            user = self.users.find_one({"token": token})
        except PyMongoError as e:
            raise DataServiceError(f"session lookup failed: {e}") from e
        if not user or not user.get("token_expires"):
            return None
        expires = _as_utc(user["token_expires"])
        if expires <= datetime.now(timezone.utc):
            return None
        return AuthSession(
            access_token=token,
            user=AuthUser(id=str(user["_id"]), email=user["email"], name=user.get("name", "")),
            expires_at=expires,
        )

    def sign_out(self, token: str) -> None:
        session = self.get_session(token)
        try:
            self.users.update_one({"token": token}, {"$unset": {"token": "", "token_expires": ""}})
        except PyMongoError as e:
            raise DataServiceError(f"sign out failed: {e}") from e
        if session:
            logger.info("User %s signed out", session.user.id)
            self._notify(SIGNED_OUT, session)


class AdminSession:
    """The signed-in admin, passed explicitly to whatever needs it.

    Stays current through an auth subscription: a sign-out of this token
    clears it, a fresh sign-in by the same user is adopted.
    """

    def __init__(self, auth: AuthService, token: Optional[str] = None):
        self._auth = auth
        self.session: Optional[AuthSession] = auth.get_session(token)
        self._subscription = auth.on_auth_state_change(self._on_auth_change)

    @property
    def user(self) -> Optional[AuthUser]:
        return self.session.user if self.session else None

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    def _on_auth_change(self, event: str, session: Optional[AuthSession]) -> None:
        if self.session is None or session is None:
            return
        if event == SIGNED_OUT and session.access_token == self.session.access_token:
            self.session = None
        elif event == SIGNED_IN and session.user.id == self.session.user.id:
            self.session = session

    def logout(self) -> None:
        if self.session:
            self._auth.sign_out(self.session.access_token)
        self.session = None

    def close(self) -> None:
        self._subscription.unsubscribe()
