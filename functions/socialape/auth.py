"""
Identity provider abstraction: Firebase Authentication and an in-memory double.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

import firebase_admin
import requests
from firebase_admin import auth, credentials
from firebase_admin import exceptions as firebase_exceptions

from socialape.errors import AuthError, ConflictError, PlatformError, ValidationError

logger = logging.getLogger(__name__)

SIGN_IN_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signInWithPassword"
MIN_PASSWORD_LENGTH = 6

EMAIL_IN_USE = {"email": "Email is already in use"}
WEAK_PASSWORD = {"password": "Password is too weak"}
INVALID_EMAIL = {"email": "Field must be a valid email address"}
UNKNOWN_EMAIL = {"email": "There is no user registered with that email address"}
WRONG_PASSWORD = {"password": "Wrong password"}
WRONG_CREDENTIALS = {"general": "Wrong credentials, please try again"}
UNAUTHORISED = {"error": "Unauthorised"}
GENERAL_FAILURE = {"general": "Something went wrong, please try again"}


@dataclass
class AuthSession:
    uid: str
    token: str


class AuthClient(Protocol):
    """Operations the API needs from the identity provider."""

    def create_user(self, email: str, password: str) -> str:
        ...

    def sign_in(self, email: str, password: str) -> AuthSession:
        ...

    def verify_token(self, token: str) -> str:
        ...

    def delete_user(self, uid: str) -> None:
        ...


def _hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


@dataclass
class InMemoryAuthClient:
    """Test double issuing opaque tokens for accounts kept in memory."""

    accounts: dict = field(default_factory=dict)
    tokens: dict = field(default_factory=dict)

    def reset(self) -> None:
        self.accounts.clear()
        self.tokens.clear()

    def create_user(self, email: str, password: str) -> str:
        key = email.strip().lower()
        if key in self.accounts:
            raise ConflictError(EMAIL_IN_USE)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(WEAK_PASSWORD)
        uid = uuid.uuid4().hex
        self.accounts[key] = {"uid": uid, "password": _hash_password(password)}
        return uid

    def sign_in(self, email: str, password: str) -> AuthSession:
        account = self.accounts.get(email.strip().lower())
        if not account:
            raise ValidationError(UNKNOWN_EMAIL)
        if not secrets.compare_digest(account["password"], _hash_password(password)):
            raise AuthError(WRONG_PASSWORD)
        token = secrets.token_urlsafe(32)
        self.tokens[token] = account["uid"]
        return AuthSession(uid=account["uid"], token=token)

    def verify_token(self, token: str) -> str:
        uid = self.tokens.get(token)
        if not uid:
            raise AuthError(UNAUTHORISED)
        return uid

    def delete_user(self, uid: str) -> None:
        for key in [k for k, v in self.accounts.items() if v["uid"] == uid]:
            del self.accounts[key]
        for token in [t for t, u in self.tokens.items() if u == uid]:
            del self.tokens[token]


@dataclass
class FirebaseAuthClient:
    """
    Firebase Authentication client.

    Account management and ID-token verification go through the Admin SDK.
    Password sign-in is not part of the Admin SDK, so it calls the Identity
    Toolkit REST endpoint with the project's web API key.
    """

    web_api_key: str
    credentials_file: Optional[str] = None
    timeout_seconds: float = 10.0

    def __post_init__(self):
        if not firebase_admin._apps:
            cred = (
                credentials.Certificate(self.credentials_file)
                if self.credentials_file
                else None
            )
            firebase_admin.initialize_app(cred)
        self._http = requests.Session()

    def create_user(self, email: str, password: str) -> str:
        try:
            record = auth.create_user(email=email, password=password)
        except auth.EmailAlreadyExistsError as exc:
            raise ConflictError(EMAIL_IN_USE) from exc
        except ValueError as exc:
            # The Admin SDK validates arguments locally before calling out.
            if "password" in str(exc).lower():
                raise ValidationError(WEAK_PASSWORD) from exc
            raise ValidationError(INVALID_EMAIL) from exc
        except firebase_exceptions.FirebaseError as exc:
            logger.error("Firebase create_user failed: %s", exc)
            raise PlatformError(GENERAL_FAILURE) from exc
        return record.uid

    def sign_in(self, email: str, password: str) -> AuthSession:
        try:
            response = self._http.post(
                SIGN_IN_URL,
                params={"key": self.web_api_key},
                json={"email": email, "password": password, "returnSecureToken": True},
                timeout=self.timeout_seconds,
            )
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Identity Toolkit sign-in request failed: %s", exc)
            raise PlatformError(GENERAL_FAILURE) from exc

        if response.ok:
            return AuthSession(uid=payload["localId"], token=payload["idToken"])

        # Messages look like "INVALID_PASSWORD" or "TOO_MANY_ATTEMPTS_TRY_LATER : ..."
        message = (payload.get("error") or {}).get("message", "")
        code = message.split(" ", 1)[0]
        if code in ("EMAIL_NOT_FOUND", "INVALID_EMAIL"):
            raise ValidationError(UNKNOWN_EMAIL)
        if code == "INVALID_PASSWORD":
            raise AuthError(WRONG_PASSWORD)
        if code in ("INVALID_LOGIN_CREDENTIALS", "USER_DISABLED"):
            raise AuthError(WRONG_CREDENTIALS)
        logger.error("Identity Toolkit sign-in rejected: %s", message)
        raise PlatformError(GENERAL_FAILURE)

    def verify_token(self, token: str) -> str:
        try:
            decoded = auth.verify_id_token(token)
        except auth.CertificateFetchError as exc:
            logger.error("Could not fetch token certificates: %s", exc)
            raise PlatformError() from exc
        except (
            ValueError,
            auth.InvalidIdTokenError,
            auth.ExpiredIdTokenError,
            auth.RevokedIdTokenError,
            auth.UserDisabledError,
        ) as exc:
            logger.warning("Error while verifying token: %s", exc)
            raise AuthError(UNAUTHORISED) from exc
        return decoded["uid"]

    def delete_user(self, uid: str) -> None:
        try:
            auth.delete_user(uid)
        except auth.UserNotFoundError:
            logger.info("Auth user %s already deleted", uid)
        except firebase_exceptions.FirebaseError as exc:
            logger.error("Firebase delete_user failed for %s: %s", uid, exc)
            raise PlatformError() from exc
