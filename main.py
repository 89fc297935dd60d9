import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import UNIQUE_FIELDS, Config, db, ensure_indexes
from engine import BookingEngine, Err, ErrorKind, Registration
from identity import FirebaseIdentityProvider, IdentityProvider, LocalIdentityProvider
from schemas import Vehicle as VehicleSchema
from store import MongoResourceStore, ResourceStore, StoreUnavailableError, new_key

logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# Utilities to serialize MongoDB documents
def serialize_value(v):
    if isinstance(v, ObjectId):
        return str(v)
    if isinstance(v, datetime):
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc).isoformat()
    return v


def serialize_doc(doc: dict):
    return {k: serialize_value(v) for k, v in doc.items()}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title="Vehicle Rental API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error kind -> HTTP status
STATUS_CODES = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INVALID_INTERVAL: 400,
    ErrorKind.ALREADY_EXISTS: 400,
    ErrorKind.UNAVAILABLE: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NO_RECORD: 404,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.UNVERIFIED: 403,
    ErrorKind.STORE_UNAVAILABLE: 503,
    ErrorKind.PROVIDER_UNAVAILABLE: 503,
    ErrorKind.PARTIAL_FAILURE: 500,
    ErrorKind.INCONSISTENT: 500,
    ErrorKind.UNCLASSIFIED: 500,
}


def error_response(err: Err) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_CODES[err.kind],
        content={"error": err.message, "code": err.kind.value},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "Invalid request")
    return error_response(Err(ErrorKind.INVALID_INPUT, message))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        kind = ErrorKind.NOT_FOUND
    elif exc.status_code < 500:
        kind = ErrorKind.INVALID_INPUT
    else:
        kind = ErrorKind.UNCLASSIFIED
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "code": kind.value},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    return error_response(Err(ErrorKind.STORE_UNAVAILABLE, "Data store is unavailable, please retry"))


# Dependencies
def get_store() -> ResourceStore:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return MongoResourceStore(db)


@lru_cache(maxsize=1)
def firebase_provider() -> FirebaseIdentityProvider:
    return FirebaseIdentityProvider(Config.FIREBASE_SERVICE_ACCOUNT, api_key=Config.FIREBASE_API_KEY)


def get_identity(store: ResourceStore = Depends(get_store)) -> IdentityProvider:
    if Config.IDENTITY_PROVIDER == "firebase":
        return firebase_provider()
    return LocalIdentityProvider(store, Config.VERIFICATION_URL)


def get_engine(
    store: ResourceStore = Depends(get_store),
    identity: IdentityProvider = Depends(get_identity),
) -> BookingEngine:
    return BookingEngine(store, identity)


@app.get("/")
def read_root():
    return {"message": "Vehicle Rental Backend is running"}


# Accounts Endpoints
class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field("", alias="firstName")
    last_name: str = Field("", alias="lastName")


@app.post("/register", status_code=201)
def register(payload: RegisterRequest, engine: BookingEngine = Depends(get_engine)):
    result = engine.claim(
        payload.username.strip(),
        Registration(
            email=payload.email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
        ),
    )
    if not result.ok:
        return error_response(result)
    return {
        "message": "User registered successfully. Check your email for verification.",
        "uid": result.value,
    }


class LoginRequest(BaseModel):
    usernameOrEmail: Optional[str] = None
    password: Optional[str] = None


def user_projection(record: dict) -> dict:
    return serialize_doc({
        "uid": record.get("uid") or record.get("id"),
        "username": record.get("username"),
        "email": record.get("email"),
        "firstName": record.get("first_name"),
        "lastName": record.get("last_name"),
        "createdAt": record.get("created_at"),
        "emailVerified": bool(record.get("email_verified")),
    })


@app.post("/login")
def login(payload: LoginRequest, engine: BookingEngine = Depends(get_engine)):
    result = engine.resolve_login((payload.usernameOrEmail or "").strip(), payload.password or "")
    if not result.ok:
        return error_response(result)
    return {"message": "Login successful", "user": user_projection(result.value)}


class EmailRequest(BaseModel):
    email: EmailStr


@app.post("/resend-verification")
def resend_verification(payload: EmailRequest, engine: BookingEngine = Depends(get_engine)):
    result = engine.resend_verification(payload.email)
    if not result.ok:
        return error_response(result)
    return {"message": "Verification email sent successfully."}


@app.post("/sync-verification")
def sync_verification(payload: EmailRequest, engine: BookingEngine = Depends(get_engine)):
    result = engine.sync_verification(payload.email)
    if not result.ok:
        return error_response(result)
    return {"emailVerified": result.value}


@app.get("/verify-email")
def verify_email(token: str, engine: BookingEngine = Depends(get_engine)):
    result = engine.complete_verification(token)
    if not result.ok:
        return error_response(result)
    return {"message": "Email verified successfully.", "uid": result.value}


# Vehicles Endpoints
@app.get("/vehicles")
def list_vehicles(store: ResourceStore = Depends(get_store)):
    vehicles = store.find(BookingEngine.vehicles)
    if not vehicles:
        return error_response(Err(ErrorKind.NOT_FOUND, "No vehicles available"))
    return [serialize_doc(v) for v in vehicles]


@app.get("/vehicles/{vehicle_id}")
def get_vehicle(vehicle_id: str, store: ResourceStore = Depends(get_store)):
    vehicle = store.get_by_key(BookingEngine.vehicles, vehicle_id)
    if not vehicle:
        return error_response(Err(ErrorKind.NOT_FOUND, "Vehicle not found"))
    return serialize_doc(vehicle)


class CreateVehicleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: Optional[str] = None
    price: float = Field(..., gt=0)
    location: Optional[str] = None
    owner_id: Optional[str] = Field(None, alias="ownerId")


@app.post("/vehicles", status_code=201)
def add_vehicle(payload: CreateVehicleRequest, store: ResourceStore = Depends(get_store)):
    vehicle = VehicleSchema(**payload.model_dump(), available=True)
    vehicle_id = store.insert(BookingEngine.vehicles, new_key(), vehicle.model_dump())
    logger.info("Vehicle %s added", vehicle_id)
    return {"id": vehicle_id, "message": "Vehicle added successfully"}


class UpdateVehicleRequest(BaseModel):
    # `available` is only ever changed by a reservation
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: Optional[str] = None
    type: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    location: Optional[str] = None
    owner_id: Optional[str] = Field(None, alias="ownerId")


@app.put("/vehicles/{vehicle_id}")
def update_vehicle(vehicle_id: str, payload: UpdateVehicleRequest, store: ResourceStore = Depends(get_store)):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return error_response(Err(ErrorKind.INVALID_INPUT, "Nothing to update"))
    if not store.update(BookingEngine.vehicles, vehicle_id, changes):
        return error_response(Err(ErrorKind.NOT_FOUND, "Vehicle not found"))
    return {"message": "Vehicle updated successfully"}


@app.delete("/vehicles/{vehicle_id}")
def delete_vehicle(vehicle_id: str, store: ResourceStore = Depends(get_store)):
    if not store.delete(BookingEngine.vehicles, vehicle_id):
        return error_response(Err(ErrorKind.NOT_FOUND, "Vehicle not found"))
    return {"message": "Vehicle deleted successfully"}


# Bookings Endpoints
class CreateBookingRequest(BaseModel):
    renter_id: str = Field(..., min_length=1, validation_alias=AliasChoices("renterId", "userId", "renter_id"))
    vehicle_id: str = Field(..., min_length=1, validation_alias=AliasChoices("vehicleId", "vehicle_id"))
    start_date: datetime = Field(..., validation_alias=AliasChoices("startDate", "pickupDate", "start_date"))
    end_date: datetime = Field(..., validation_alias=AliasChoices("endDate", "returnDate", "end_date"))

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def date_only(cls, v):
        # "2024-03-01" means midnight UTC
        if isinstance(v, str) and len(v) == 10:
            return datetime.combine(date.fromisoformat(v), datetime.min.time(), tzinfo=timezone.utc)
        return v


@app.post("/bookings", status_code=201)
def create_booking(payload: CreateBookingRequest, engine: BookingEngine = Depends(get_engine)):
    result = engine.reserve(payload.vehicle_id, payload.renter_id, payload.start_date, payload.end_date)
    if not result.ok:
        return error_response(result)
    booking = result.value
    return {
        "message": "Booking confirmed",
        "bookingId": booking["id"],
        "totalPrice": booking["total_price"],
    }


@app.get("/test")
def diagnostics():
    """Report whether the database answers and the uniqueness indexes are in place."""
    response = {
        "backend": "✅ Running",
        "identity_provider": Config.IDENTITY_PROVIDER,
        "database": "❌ Not Configured",
        "unique_indexes": {},
    }
    if db is None:
        return response

    try:
        db.command("ping")
        response["database"] = "✅ Connected"
        for collection, field in UNIQUE_FIELDS:
            indexes = db[collection].index_information()
            response["unique_indexes"][f"{collection}.{field}"] = any(
                spec.get("unique") and spec["key"][0][0] == field for spec in indexes.values()
            )
    except PyMongoError as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"⚠️  Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
