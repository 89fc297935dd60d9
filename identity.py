"""
Identity providers

Own credentials and the "this email belongs to this account" fact.
`LocalIdentityProvider` keeps identities in the resource store;
`FirebaseIdentityProvider` delegates to Firebase Authentication.
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import firebase_admin
import requests
from firebase_admin import auth, credentials
from firebase_admin import exceptions as firebase_exceptions

from store import KeyConflictError, ResourceStore, StoreUnavailableError

logger = logging.getLogger(__name__)


class IdentityError(Exception):
    pass


class ProviderUnavailableError(IdentityError):
    """The provider could not be reached or timed out."""


class IdentityExistsError(IdentityError):
    """The email is already held by another identity."""


class IdentityNotFoundError(IdentityError):
    pass


@dataclass
class Identity:
    uid: str
    email: str
    display_name: str = ""
    email_verified: bool = False


class IdentityProvider(ABC):
    # Set when verification links point back at this service
    hosts_verification_links = False

    @abstractmethod
    def create_identity(self, email: str, password: str, display_name: str) -> Identity:
        pass

    @abstractmethod
    def get_by_email(self, email: str) -> Optional[Identity]:
        pass

    @abstractmethod
    def delete_identity(self, uid: str) -> None:
        pass

    @abstractmethod
    def issue_verification_link(self, email: str) -> str:
        pass

    @abstractmethod
    def verify_password(self, email: str, password: str) -> bool:
        pass

    def confirm_verification(self, token: str) -> Optional[Identity]:
        """Complete a verification link; only called when `hosts_verification_links` is set."""
        return None


def normalize_email(email: str) -> str:
    return email.strip().lower()


class LocalIdentityProvider(IdentityProvider):
    collection = "identity"
    iterations = 260_000
    hosts_verification_links = True

    def __init__(self, store: ResourceStore, verification_url: str):
        self._store = store
        self._verification_url = verification_url

    def _hash(self, password: str, salt: str, iterations: int) -> str:
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
        return digest.hex()

    def _to_identity(self, doc: dict) -> Identity:
        return Identity(
            uid=doc["id"],
            email=doc["email"],
            display_name=doc.get("display_name", ""),
            email_verified=bool(doc.get("email_verified", False)),
        )

    def _find(self, email: str) -> Optional[dict]:
        try:
            docs = self._store.query_by_field(self.collection, "email", normalize_email(email), limit=1)
        except StoreUnavailableError as e:
            raise ProviderUnavailableError(str(e)) from e
        return docs[0] if docs else None

    def create_identity(self, email, password, display_name):
        uid = uuid.uuid4().hex
        salt = secrets.token_hex(16)
        doc = {
            "email": normalize_email(email),
            "display_name": display_name,
            "email_verified": False,
            "password_hash": f"pbkdf2_sha256${self.iterations}${salt}${self._hash(password, salt, self.iterations)}",
            "verification_token": None,
        }
        try:
            self._store.insert(self.collection, uid, doc)
        except KeyConflictError as e:
            raise IdentityExistsError(f"Email already exists: {email}") from e
        except StoreUnavailableError as e:
            raise ProviderUnavailableError(str(e)) from e
        return Identity(uid=uid, email=doc["email"], display_name=display_name)

    def get_by_email(self, email):
        doc = self._find(email)
        return self._to_identity(doc) if doc else None

    def delete_identity(self, uid):
        try:
            self._store.delete(self.collection, uid)
        except StoreUnavailableError as e:
            raise ProviderUnavailableError(str(e)) from e

    def issue_verification_link(self, email):
        doc = self._find(email)
        if doc is None:
            raise IdentityNotFoundError(email)
        token = secrets.token_urlsafe(32)
        try:
            self._store.update(self.collection, doc["id"], {"verification_token": token})
        except StoreUnavailableError as e:
            raise ProviderUnavailableError(str(e)) from e
        return f"{self._verification_url}?token={token}"

    def verify_password(self, email, password):
        doc = self._find(email)
        if doc is None:
            return False
        _, iterations, salt, expected = doc["password_hash"].split("$")
        return hmac.compare_digest(self._hash(password, salt, int(iterations)), expected)

    def confirm_verification(self, token):
        try:
            docs = self._store.query_by_field(self.collection, "verification_token", token, limit=1)
            if not docs:
                return None
            self._store.update(self.collection, docs[0]["id"], {"email_verified": True, "verification_token": None})
        except StoreUnavailableError as e:
            raise ProviderUnavailableError(str(e)) from e
        identity = self._to_identity(docs[0])
        identity.email_verified = True
        return identity


SIGN_IN_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signInWithPassword"

# Firebase errors that mean "try again later" rather than "no"
_TRANSIENT = (firebase_exceptions.UnavailableError, firebase_exceptions.DeadlineExceededError)


class FirebaseIdentityProvider(IdentityProvider):
    def __init__(self, service_account_path: str, api_key: Optional[str] = None, timeout: float = 10.0):
        cred = credentials.Certificate(service_account_path)
        self._app = firebase_admin.initialize_app(cred, name="identity")
        self._api_key = api_key
        self._timeout = timeout

    def _to_identity(self, record) -> Identity:
        return Identity(
            uid=record.uid,
            email=record.email,
            display_name=record.display_name or "",
            email_verified=bool(record.email_verified),
        )

    def create_identity(self, email, password, display_name):
        try:
            record = auth.create_user(email=email, password=password, display_name=display_name, app=self._app)
        except auth.EmailAlreadyExistsError as e:
            raise IdentityExistsError(f"Email already exists: {email}") from e
        except _TRANSIENT as e:
            raise ProviderUnavailableError(str(e)) from e
        return self._to_identity(record)

    def get_by_email(self, email):
        try:
            return self._to_identity(auth.get_user_by_email(email, app=self._app))
        except auth.UserNotFoundError:
            return None
        except _TRANSIENT as e:
            raise ProviderUnavailableError(str(e)) from e

    def delete_identity(self, uid):
        try:
            auth.delete_user(uid, app=self._app)
        except auth.UserNotFoundError:
            logger.info("Identity %s already gone", uid)
        except _TRANSIENT as e:
            raise ProviderUnavailableError(str(e)) from e

    def issue_verification_link(self, email):
        try:
            return auth.generate_email_verification_link(email, app=self._app)
        except auth.UserNotFoundError as e:
            raise IdentityNotFoundError(email) from e
        except _TRANSIENT as e:
            raise ProviderUnavailableError(str(e)) from e

    def verify_password(self, email, password):
        if not self._api_key:
            raise ProviderUnavailableError("FIREBASE_API_KEY is not configured")
        try:
            resp = requests.post(
                SIGN_IN_URL,
                params={"key": self._api_key},
                json={"email": email, "password": password, "returnSecureToken": False},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise ProviderUnavailableError(str(e)) from e
        if resp.status_code == 200:
            return True
        if resp.status_code == 400:
            return False
        raise ProviderUnavailableError(f"Sign-in endpoint answered {resp.status_code}")
