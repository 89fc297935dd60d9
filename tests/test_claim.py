from concurrent.futures import ThreadPoolExecutor

from engine import BookingEngine, ErrorKind, Registration


def registration(email="a@x.com"):
    return Registration(email=email, password="secret1", first_name="Alice", last_name="Liddell")


def accounts(store):
    return store.data["account"]


def test_claim_creates_identity_and_account(engine, store, identity):
    result = engine.claim("alice", registration())

    assert result.ok
    uid = result.value
    assert uid in identity.identities
    account = accounts(store)[uid]
    assert account["username"] == "alice"
    assert account["email"] == "a@x.com"
    assert account["display_name"] == "Alice Liddell"
    assert account["email_verified"] is False
    assert identity.links == [f"https://verify.test/{uid}"]


def test_taken_username_is_rejected_every_time(engine, store, identity):
    assert engine.claim("alice", registration()).ok

    for email in ("b@y.com", "c@z.com"):
        result = engine.claim("alice", registration(email))
        assert result.kind == ErrorKind.ALREADY_EXISTS
        assert result.message == "Username already exists"

    assert len(accounts(store)) == 1
    assert len(identity.identities) == 1


def test_taken_email_is_rejected(engine, store):
    assert engine.claim("alice", registration()).ok

    result = engine.claim("alice2", registration())

    assert result.kind == ErrorKind.ALREADY_EXISTS
    assert result.message == "Email already exists"
    assert len(accounts(store)) == 1


def test_missing_fields(engine, identity):
    assert engine.claim("", registration()).kind == ErrorKind.INVALID_INPUT
    assert engine.claim("bob", Registration(email="", password="x")).kind == ErrorKind.INVALID_INPUT
    assert identity.identities == {}


def test_concurrent_claims_same_username_one_winner(engine, store, identity, lineup):
    # Every claimant passes the absence check before anyone writes
    store.hooks[("query", "account")] = lineup(5)

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(lambda i: engine.claim("alice", registration(f"u{i}@x.com")), range(5)))

    winners = [r for r in results if r.ok]
    assert len(winners) == 1
    assert all(r.kind == ErrorKind.ALREADY_EXISTS for r in results if not r.ok)
    assert list(accounts(store)) == [winners[0].value]
    # Losers' identities were rolled back
    assert list(identity.identities) == [winners[0].value]


def test_lost_race_with_failed_rollback_is_partial_failure(engine, store, identity, lineup):
    store.hooks[("query", "account")] = lineup(2)
    identity.fail_delete = True

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda i: engine.claim("alice", registration(f"u{i}@x.com")), range(2)))

    kinds = sorted(r.kind.value for r in results if not r.ok)
    assert kinds == [ErrorKind.PARTIAL_FAILURE.value]
    assert len(identity.identities) == 2
    assert len(accounts(store)) == 1


def test_store_down_before_identity_creation(engine, store, identity):
    store.fail("query", "account")

    result = engine.claim("alice", registration())

    assert result.kind == ErrorKind.STORE_UNAVAILABLE
    assert identity.identities == {}


def test_provider_down(engine, store, identity):
    identity.down.add("create")

    result = engine.claim("alice", registration())

    assert result.kind == ErrorKind.PROVIDER_UNAVAILABLE
    assert accounts(store) == {}


def test_account_write_timeout_that_landed_is_success(engine, store, identity):
    store.fail("insert", "account", after=True)

    result = engine.claim("alice", registration())

    assert result.ok
    assert result.value in accounts(store)
    assert result.value in identity.identities


def test_account_write_timeout_that_did_not_land_rolls_back(engine, store, identity):
    store.fail("insert", "account")

    result = engine.claim("alice", registration())

    assert result.kind == ErrorKind.STORE_UNAVAILABLE
    assert accounts(store) == {}
    assert identity.identities == {}


def test_account_write_outcome_unknown_keeps_identity(engine, store, identity):
    store.fail("insert", "account")
    store.fail("get", "account")

    result = engine.claim("alice", registration())

    assert result.kind == ErrorKind.PARTIAL_FAILURE
    assert len(identity.identities) == 1


def test_account_write_failure_with_failed_rollback(engine, store, identity):
    store.fail("insert", "account")
    identity.fail_delete = True

    result = engine.claim("alice", registration())

    assert result.kind == ErrorKind.PARTIAL_FAILURE
    assert len(identity.identities) == 1


def test_verification_link_failure_does_not_fail_registration(engine, identity):
    identity.down.add("link")

    result = engine.claim("alice", registration())

    assert result.ok
    assert identity.links == []


def test_unexpected_store_error_is_unclassified(engine, store, identity):
    store.fail("insert", "account", error=RuntimeError("boom"))

    result = engine.claim("alice", registration())

    assert result.kind == ErrorKind.UNCLASSIFIED
    assert identity.identities == {}


def test_identity_created_despite_timeout_is_rolled_back(store, local):
    engine = BookingEngine(store, local)
    store.fail("insert", "identity", after=True)

    result = engine.claim("alice", registration())

    assert result.kind == ErrorKind.PROVIDER_UNAVAILABLE
    assert store.data["identity"] == {}
    # The email is free again, so a retry goes through
    retry = engine.claim("alice", registration())
    assert retry.ok
    assert list(accounts(store)) == [retry.value]


def test_identity_timeout_with_unknown_outcome_keeps_identity(store, local):
    engine = BookingEngine(store, local)
    store.fail("insert", "identity", after=True)
    store.fail("query", "identity")

    result = engine.claim("alice", registration())

    assert result.kind == ErrorKind.PARTIAL_FAILURE
    assert len(store.data["identity"]) == 1
    assert accounts(store) == {}


def test_account_reread_error_is_partial_failure(engine, store, identity):
    store.fail("insert", "account")
    store.fail("get", "account", error=RuntimeError("boom"))

    result = engine.claim("alice", registration())

    assert result.kind == ErrorKind.PARTIAL_FAILURE
    assert len(identity.identities) == 1
