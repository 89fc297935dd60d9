"""
Database Schemas

Vehicle Rental schemas using Pydantic models.
Each Pydantic model maps to a MongoDB collection using the lowercase class name.
- Account -> "account"
- Vehicle -> "vehicle"
- Booking -> "booking"
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

class Account(BaseModel):
    """
    Registered users, keyed by the identity provider's uid
    Collection: "account"
    """
    uid: str = Field(..., description="Identity provider uid, also the document key")
    username: str = Field(..., min_length=1, description="Unique username")
    email: str = Field(..., description="Email held by the identity provider")
    first_name: str = Field(..., description="Given name")
    last_name: str = Field(..., description="Family name")
    display_name: str = Field("", description="First and last name")
    email_verified: bool = Field(False, description="Copied from the identity provider by the verification path")

class Vehicle(BaseModel):
    """
    Vehicles available for rent
    Collection: "vehicle"
    """
    name: str = Field(..., description="Display name, e.g., Toyota Corolla")
    type: Optional[str] = Field(None, description="sedan | suv | van ...")
    price: float = Field(..., gt=0, description="Daily rental rate")
    location: Optional[str] = Field(None, description="Pickup location")
    owner_id: Optional[str] = Field(None, description="Account uid of the owner")
    available: bool = Field(True, description="Cleared only by a successful reservation")

class Booking(BaseModel):
    """
    Reservations of a vehicle, price snapshotted at claim time
    Collection: "booking"
    """
    renter_id: str = Field(..., description="Account uid of the renter")
    vehicle_id: str = Field(..., description="ID of the reserved vehicle")
    start_date: datetime = Field(..., description="Pickup time (UTC)")
    end_date: datetime = Field(..., description="Return time (UTC)")
    duration_days: int = Field(..., ge=1, description="Billed days, partial days rounded up")
    rate_per_day: float = Field(..., gt=0, description="Vehicle rate at claim time")
    total_price: float = Field(..., gt=0, description="duration_days * rate_per_day")
