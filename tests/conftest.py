"""
In-memory stand-ins for the store and the identity provider.

Both are thread-safe so races can be replayed with real threads. Hooks run
before an operation touches data (a barrier there lines up every thread on
the same step), faults raise before or after the operation is applied.
"""

import threading
import uuid
from collections import defaultdict

import pytest

from engine import BookingEngine
from identity import (
    Identity,
    IdentityExistsError,
    IdentityNotFoundError,
    IdentityProvider,
    LocalIdentityProvider,
    ProviderUnavailableError,
)
from store import KeyConflictError, ResourceStore, StoreUnavailableError, now


class FakeStore(ResourceStore):
    unique = {"account": ("username",), "identity": ("email",)}

    def __init__(self):
        self.data = defaultdict(dict)
        self.hooks = {}
        self._faults = {}
        self._lock = threading.Lock()

    def fail(self, operation, collection, error=None, after=False, times=1):
        """Raise `error` on the next `times` calls (None: every call)."""
        self._faults[(operation, collection)] = [error or StoreUnavailableError("timed out"), after, times]

    def _step(self, operation, collection, after):
        if not after and (operation, collection) in self.hooks:
            self.hooks[(operation, collection)]()
        entry = self._faults.get((operation, collection))
        if entry is None or entry[1] != after or entry[2] == 0:
            return
        if entry[2] is not None:
            entry[2] -= 1
        raise entry[0]

    def seed(self, collection, key, **fields):
        self.data[collection][key] = dict(fields)
        return key

    def get_by_key(self, collection, key):
        self._step("get", collection, after=False)
        with self._lock:
            doc = self.data[collection].get(key)
            result = dict(doc, id=key) if doc is not None else None
        self._step("get", collection, after=True)
        return result

    def query_by_field(self, collection, field, value, limit=0):
        self._step("query", collection, after=False)
        with self._lock:
            found = [dict(d, id=k) for k, d in self.data[collection].items() if d.get(field) == value]
        self._step("query", collection, after=True)
        return found[:limit] if limit else found

    def insert(self, collection, key, data):
        self._step("insert", collection, after=False)
        with self._lock:
            docs = self.data[collection]
            if key in docs:
                raise KeyConflictError(key)
            for field in self.unique.get(collection, ()):
                if any(d.get(field) == data.get(field) for d in docs.values()):
                    raise KeyConflictError(f"{collection}.{field}")
            docs[key] = dict(data, created_at=now())
        self._step("insert", collection, after=True)
        return key

    def conditional_update(self, collection, key, field, expected, new):
        self._step("conditional_update", collection, after=False)
        with self._lock:
            doc = self.data[collection].get(key)
            matched = doc is not None and doc.get(field) == expected
            if matched:
                doc[field] = new
        self._step("conditional_update", collection, after=True)
        return matched

    def update(self, collection, key, changes):
        self._step("update", collection, after=False)
        with self._lock:
            doc = self.data[collection].get(key)
            if doc is not None:
                doc.update(changes)
        return doc is not None

    def delete(self, collection, key):
        self._step("delete", collection, after=False)
        with self._lock:
            return self.data[collection].pop(key, None) is not None

    def find(self, collection, limit=0):
        self._step("find", collection, after=False)
        with self._lock:
            found = [dict(d, id=k) for k, d in self.data[collection].items()]
        return found[:limit] if limit else found


class FastLocalIdentityProvider(LocalIdentityProvider):
    iterations = 1_000


class FakeIdentityProvider(IdentityProvider):
    def __init__(self):
        self.identities = {}
        self.passwords = {}
        self.links = []
        self.down = set()
        self.fail_delete = False
        self._lock = threading.Lock()

    def _check(self, operation):
        if operation in self.down:
            raise ProviderUnavailableError(operation)

    def create_identity(self, email, password, display_name):
        self._check("create")
        with self._lock:
            if any(i.email == email for i in self.identities.values()):
                raise IdentityExistsError(email)
            identity = Identity(uid=uuid.uuid4().hex, email=email, display_name=display_name)
            self.identities[identity.uid] = identity
            self.passwords[identity.uid] = password
        return identity

    def get_by_email(self, email):
        self._check("get")
        with self._lock:
            for identity in self.identities.values():
                if identity.email == email:
                    return Identity(**vars(identity))
        return None

    def delete_identity(self, uid):
        if self.fail_delete:
            raise ProviderUnavailableError("delete")
        with self._lock:
            self.identities.pop(uid, None)
            self.passwords.pop(uid, None)

    def issue_verification_link(self, email):
        self._check("link")
        identity = self.get_by_email(email)
        if identity is None:
            raise IdentityNotFoundError(email)
        link = f"https://verify.test/{identity.uid}"
        self.links.append(link)
        return link

    def verify_password(self, email, password):
        self._check("password")
        identity = self.get_by_email(email)
        return identity is not None and self.passwords[identity.uid] == password

    def mark_verified(self, email):
        identity = self.get_by_email(email)
        self.identities[identity.uid].email_verified = True


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def identity():
    return FakeIdentityProvider()


@pytest.fixture
def local(store):
    return FastLocalIdentityProvider(store, "http://api.test/verify-email")


@pytest.fixture
def engine(store, identity):
    return BookingEngine(store, identity)


@pytest.fixture
def lineup():
    """Build a hook that blocks until `count` threads reached the same step."""

    def make(count):
        barrier = threading.Barrier(count)
        return lambda: barrier.wait(timeout=5)

    return make
