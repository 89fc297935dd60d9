"""
Reservation and uniqueness engine

Every operation returns `Ok` or `Err` and never raises. The store and the
identity provider are injected, so each step between two collaborator calls
may interleave with other requests; exclusion comes only from the store's
conditional update and its unique index.
"""

import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from identity import (
    IdentityError,
    IdentityExistsError,
    IdentityProvider,
    ProviderUnavailableError,
)
from pricing import PricingError, as_utc, rental_days
from pricing import price as compute_price
from schemas import Account, Booking
from store import KeyConflictError, ResourceStore, StoreUnavailableError, new_key

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    INVALID_INTERVAL = "invalid_interval"
    ALREADY_EXISTS = "already_exists"
    UNAVAILABLE = "unavailable"
    NOT_FOUND = "not_found"
    NO_RECORD = "no_record"
    INVALID_CREDENTIALS = "invalid_credentials"
    UNVERIFIED = "unverified"
    STORE_UNAVAILABLE = "store_unavailable"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PARTIAL_FAILURE = "partial_failure"
    INCONSISTENT = "inconsistent"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class Ok:
    value: Any = None
    ok = True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    ok = False


Result = Union[Ok, Err]

STORE_DOWN = "Data store is unavailable, please retry"
PROVIDER_DOWN = "Identity provider is unavailable, please retry"


def _unavailable(error: Exception) -> Err:
    if isinstance(error, ProviderUnavailableError):
        return Err(ErrorKind.PROVIDER_UNAVAILABLE, PROVIDER_DOWN)
    return Err(ErrorKind.STORE_UNAVAILABLE, STORE_DOWN)


def _guarded(operation: str):
    """Turn any unexpected exception into an unclassified Err."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception:
                logger.exception("Unclassified failure in %s", operation)
                return Err(ErrorKind.UNCLASSIFIED, f"{operation} failed")

        return wrapper

    return decorator


@dataclass
class Registration:
    email: str
    password: str
    first_name: str = ""
    last_name: str = ""


class BookingEngine:
    accounts = "account"
    vehicles = "vehicle"
    bookings = "booking"

    def __init__(self, store: ResourceStore, identity: IdentityProvider):
        self._store = store
        self._identity = identity

    # ---------- Uniqueness claim ----------

    @_guarded("Registration")
    def claim(self, username: str, payload: Registration) -> Result:
        """Register `username`, creating the identity first and the account second.

        The absence check is advisory; the account insert is guarded by the
        unique index on username, and losing that race rolls the identity back.
        """
        if not username or not payload.email or not payload.password:
            return Err(ErrorKind.INVALID_INPUT, "Username, email and password are required")

        try:
            taken = self._store.query_by_field(self.accounts, "username", username, limit=1)
        except StoreUnavailableError as e:
            return _unavailable(e)
        if taken:
            return Err(ErrorKind.ALREADY_EXISTS, "Username already exists")

        display_name = f"{payload.first_name} {payload.last_name}".strip()
        try:
            identity = self._identity.create_identity(payload.email, payload.password, display_name)
        except IdentityExistsError:
            return Err(ErrorKind.ALREADY_EXISTS, "Email already exists")
        except ProviderUnavailableError:
            return self._settle_identity_create(payload.email)

        account = Account(
            uid=identity.uid,
            username=username,
            email=identity.email,
            first_name=payload.first_name,
            last_name=payload.last_name,
            display_name=display_name,
            email_verified=False,
        )
        try:
            self._store.insert(self.accounts, identity.uid, account.model_dump())
        except KeyConflictError:
            logger.warning("Username %s claimed concurrently, rolling back identity %s", username, identity.uid)
            return self._rollback_identity(identity.uid, Err(ErrorKind.ALREADY_EXISTS, "Username already exists"))
        except StoreUnavailableError:
            return self._settle_account_write(identity.uid, identity.email)
        except Exception:
            logger.exception("Account write for %s failed", identity.uid)
            return self._rollback_identity(identity.uid, Err(ErrorKind.UNCLASSIFIED, "Registration failed"))

        self._send_verification(identity.email)
        logger.info("Account %s registered as %s", identity.uid, username)
        return Ok(identity.uid)

    def _settle_account_write(self, uid: str, email: str) -> Result:
        # The insert timed out: it may or may not have been applied
        try:
            record = self._store.get_by_key(self.accounts, uid)
        except Exception:
            logger.error(
                "Account write for identity %s has unknown outcome; left for reconciliation", uid, exc_info=True
            )
            return Err(ErrorKind.PARTIAL_FAILURE, "Registration could not be confirmed")
        if record is not None:
            logger.info("Account write for %s landed despite the timeout", uid)
            self._send_verification(email)
            return Ok(uid)
        return self._rollback_identity(uid, Err(ErrorKind.STORE_UNAVAILABLE, STORE_DOWN))

    def _settle_identity_create(self, email: str) -> Result:
        # Identity creation timed out: the provider may still have created it
        try:
            identity = self._identity.get_by_email(email)
            record = self._store.get_by_key(self.accounts, identity.uid) if identity else None
        except Exception:
            logger.error("Identity creation for %s has unknown outcome; left for reconciliation", email, exc_info=True)
            return Err(ErrorKind.PARTIAL_FAILURE, "Registration could not be confirmed")
        if identity is None:
            return Err(ErrorKind.PROVIDER_UNAVAILABLE, PROVIDER_DOWN)
        if record is not None:
            # Held by an account that registered concurrently
            return Err(ErrorKind.ALREADY_EXISTS, "Email already exists")
        logger.warning("Identity %s was created despite the timeout, rolling it back", identity.uid)
        return self._rollback_identity(identity.uid, Err(ErrorKind.PROVIDER_UNAVAILABLE, PROVIDER_DOWN))

    def _rollback_identity(self, uid: str, failure: Err) -> Result:
        try:
            self._identity.delete_identity(uid)
        except Exception:
            logger.error("Rollback of identity %s failed; identity has no account record", uid, exc_info=True)
            return Err(ErrorKind.PARTIAL_FAILURE, "Registration failed and could not be rolled back")
        return failure

    def _send_verification(self, email: str) -> None:
        try:
            link = self._identity.issue_verification_link(email)
        except IdentityError as e:
            logger.warning("Verification link for %s not issued: %s", email, e)
            return
        logger.info("Email verification link: %s", link)

    # ---------- Availability reservation ----------

    @_guarded("Reservation")
    def reserve(self, vehicle_id: str, renter_id: str, start, end) -> Result:
        """Flip the vehicle from available to reserved, then record the booking.

        The flag is claimed with a conditional update before the booking is
        written, so at most one concurrent caller gets past that step.
        """
        if not vehicle_id or not renter_id:
            return Err(ErrorKind.INVALID_INPUT, "vehicleId and renterId are required")
        try:
            days = rental_days(start, end)
        except PricingError as e:
            return Err(ErrorKind.INVALID_INTERVAL, str(e))
        except TypeError:
            return Err(ErrorKind.INVALID_INPUT, "Start and end dates are required")

        try:
            vehicle = self._store.get_by_key(self.vehicles, vehicle_id)
        except StoreUnavailableError as e:
            return _unavailable(e)
        if vehicle is None:
            return Err(ErrorKind.NOT_FOUND, "Vehicle not found")
        if not vehicle.get("available", False):
            return Err(ErrorKind.UNAVAILABLE, "Vehicle is not available")

        rate = vehicle.get("price")
        try:
            total = compute_price(start, end, rate)
        except (PricingError, TypeError):
            return Err(ErrorKind.INVALID_INTERVAL, "Vehicle has no valid daily rate")

        booking = Booking(
            renter_id=renter_id,
            vehicle_id=vehicle_id,
            start_date=as_utc(start),
            end_date=as_utc(end),
            duration_days=days,
            rate_per_day=float(rate),
            total_price=total,
        ).model_dump()

        try:
            claimed = self._store.conditional_update(self.vehicles, vehicle_id, "available", True, False)
        except StoreUnavailableError as e:
            logger.error("Availability claim on vehicle %s has unknown outcome", vehicle_id)
            return _unavailable(e)
        if not claimed:
            logger.warning("Vehicle %s was reserved by a concurrent request", vehicle_id)
            return Err(ErrorKind.UNAVAILABLE, "Vehicle is not available")

        booking_id = new_key()
        try:
            self._store.insert(self.bookings, booking_id, booking)
        except Exception as e:
            return self._settle_booking_write(vehicle_id, booking_id, booking, e)

        logger.info("Booking %s created for vehicle %s, total %.2f", booking_id, vehicle_id, total)
        return Ok({"id": booking_id, **booking})

    def _settle_booking_write(self, vehicle_id: str, booking_id: str, booking: dict, error: Exception) -> Result:
        if isinstance(error, StoreUnavailableError):
            try:
                existing = self._store.get_by_key(self.bookings, booking_id)
            except Exception:
                logger.error(
                    "Booking %s for vehicle %s has unknown outcome; vehicle left reserved for reconciliation",
                    booking_id,
                    vehicle_id,
                    exc_info=True,
                )
                return Err(ErrorKind.INCONSISTENT, "Reservation state could not be determined")
            if existing is not None:
                logger.info("Booking %s landed despite the timeout", booking_id)
                return Ok({"id": booking_id, **booking})
        else:
            logger.error("Booking write for vehicle %s failed", vehicle_id, exc_info=error)

        try:
            reverted = self._store.conditional_update(self.vehicles, vehicle_id, "available", False, True)
        except Exception:
            logger.error("Reverting vehicle %s raised", vehicle_id, exc_info=True)
            reverted = False
        if not reverted:
            logger.error("Vehicle %s left unavailable without a booking; needs reconciliation", vehicle_id)
            return Err(ErrorKind.INCONSISTENT, "Vehicle availability could not be restored")

        if isinstance(error, StoreUnavailableError):
            return _unavailable(error)
        return Err(ErrorKind.UNCLASSIFIED, "Booking could not be saved")

    # ---------- Pricing ----------

    @_guarded("Pricing")
    def price(self, start, end, rate_per_day) -> Result:
        try:
            return Ok(compute_price(start, end, rate_per_day))
        except PricingError as e:
            return Err(ErrorKind.INVALID_INTERVAL, str(e))
        except TypeError:
            return Err(ErrorKind.INVALID_INPUT, "Start date, end date and rate are required")

    # ---------- Login and verification ----------

    @_guarded("Login")
    def resolve_login(self, username_or_email: str, password: str) -> Result:
        """Find the account for a username or an email and check it may log in.

        The verified flag is read from the account record, not the provider.
        """
        if not username_or_email or not password:
            return Err(ErrorKind.INVALID_INPUT, "Username/Email and password are required")

        invalid = Err(ErrorKind.INVALID_CREDENTIALS, "Invalid username or password")
        try:
            if "@" in username_or_email:
                identity = self._identity.get_by_email(username_or_email)
                if identity is None:
                    return invalid
                record = self._store.get_by_key(self.accounts, identity.uid)
                if record is None:
                    return Err(ErrorKind.NO_RECORD, "User not found in database")
            else:
                docs = self._store.query_by_field(self.accounts, "username", username_or_email, limit=1)
                if not docs:
                    return invalid
                record = docs[0]
            if not self._identity.verify_password(record["email"], password):
                return invalid
        except (StoreUnavailableError, ProviderUnavailableError) as e:
            return _unavailable(e)

        if not record.get("email_verified"):
            return Err(ErrorKind.UNVERIFIED, "Email not verified. Please verify your email first.")
        return Ok(record)

    @_guarded("Verification")
    def resend_verification(self, email: str) -> Result:
        if not email:
            return Err(ErrorKind.INVALID_INPUT, "Email is required")
        try:
            identity = self._identity.get_by_email(email)
            if identity is None:
                return Err(ErrorKind.NOT_FOUND, "No account for this email")
            if identity.email_verified:
                return Err(ErrorKind.INVALID_INPUT, "Email is already verified.")
            link = self._identity.issue_verification_link(identity.email)
        except ProviderUnavailableError as e:
            return _unavailable(e)
        logger.info("Email verification link: %s", link)
        return Ok(None)

    @_guarded("Verification")
    def sync_verification(self, email: str) -> Result:
        """Copy the provider's verified flag into the account record."""
        if not email:
            return Err(ErrorKind.INVALID_INPUT, "Email is required")
        try:
            identity = self._identity.get_by_email(email)
            if identity is None:
                return Err(ErrorKind.NOT_FOUND, "No account for this email")
            record = self._store.get_by_key(self.accounts, identity.uid)
            if record is None:
                return Err(ErrorKind.NO_RECORD, "User not found in database")
            if identity.email_verified and not record.get("email_verified"):
                self._store.update(self.accounts, identity.uid, {"email_verified": True})
                logger.info("Account %s marked verified", identity.uid)
        except (StoreUnavailableError, ProviderUnavailableError) as e:
            return _unavailable(e)
        return Ok(identity.email_verified)

    @_guarded("Verification")
    def complete_verification(self, token: str) -> Result:
        if not token:
            return Err(ErrorKind.INVALID_INPUT, "Verification token is required")
        if not self._identity.hosts_verification_links:
            return Err(ErrorKind.INVALID_INPUT, "Verification links are completed by the identity provider")
        try:
            identity = self._identity.confirm_verification(token)
            if identity is None:
                return Err(ErrorKind.NOT_FOUND, "Verification link is invalid or already used")
            self._store.update(self.accounts, identity.uid, {"email_verified": True})
        except (StoreUnavailableError, ProviderUnavailableError) as e:
            return _unavailable(e)
        logger.info("Account %s verified its email", identity.uid)
        return Ok(identity.uid)
