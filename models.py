from enum import Enum
from typing import Optional
from datetime import datetime, timezone

from sqlalchemy.types import DateTime, TypeDecorator
from sqlmodel import SQLModel, Field, Column, JSON


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes in and out. SQLite has no zone support, so values
    are stored there as naive UTC and tagged again on load."""

    impl = DateTime
    cache_ok = True

    def load_dialect_impl(self, dialect):
        return dialect.type_descriptor(DateTime(timezone=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class RequestStatus(str, Enum):
    PENDING = "pending"
    DRIVER_ASSIGNED = "driver_assigned"
    NO_DRIVER_AVAILABLE = "no_driver_available"
    DRIVER_ARRIVED = "driver_arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class EscrowStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"
    PENDING_CASH = "pending_cash"


SETTLEABLE_STATUSES = (RequestStatus.COMPLETED.value, RequestStatus.DELIVERED.value)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    role: str = "client"  # client, driver, seller


class DriverProfile(SQLModel, table=True):
    driver_id: int = Field(primary_key=True, foreign_key="user.id")
    display_name: str = ""
    service_type: str = Field(default="taxi", index=True)  # taxi, delivery
    vehicle_class: str = "standard"
    rating_average: float = 0.0
    total_rides: int = 0
    is_verified: bool = False


class DriverLocation(SQLModel, table=True):
    driver_id: int = Field(primary_key=True, foreign_key="user.id")
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    is_online: bool = True
    is_available: bool = Field(default=True, index=True)
    last_ping: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)


class DriverCredit(SQLModel, table=True):
    """Prepaid ride credits from the driver's current subscription plan."""
    driver_id: int = Field(primary_key=True, foreign_key="user.id")
    rides_remaining: int = 0
    rides_used: int = 0
    plan_start: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    plan_end: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class CreditLedgerEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    driver_id: int = Field(index=True)
    request_id: Optional[int] = Field(default=None, index=True)
    delta: int
    balance_before: int
    balance_after: int
    reason: str  # plan_activation, arrival_confirmed
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class RideRequest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    requester_id: int = Field(index=True, foreign_key="user.id")
    service_type: str = "taxi"
    vehicle_class: Optional[str] = None
    priority: str = Priority.NORMAL.value
    pickup_lat: float
    pickup_lng: float
    dest_lat: Optional[float] = None
    dest_lng: Optional[float] = None
    status: str = Field(default=RequestStatus.PENDING.value, index=True)
    driver_id: Optional[int] = Field(default=None, index=True)
    estimated_price: Optional[int] = None
    agreed_price: Optional[int] = None
    # bidding window
    bidding_active: bool = False
    proposed_price: Optional[int] = None
    bidding_ends_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    assigned_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    arrived_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    settled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class RideOffer(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(index=True, foreign_key="riderequest.id")
    driver_id: int = Field(index=True)
    offered_price: int
    is_counter_offer: bool = False
    message: Optional[str] = None
    driver_rating: float = 0.0
    distance_to_pickup_km: float = 0.0
    eta_minutes: int = 0
    status: str = Field(default=OfferStatus.PENDING.value, index=True)
    expires_at: datetime = Field(sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    responded_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class EscrowTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(unique=True, foreign_key="riderequest.id")
    buyer_id: int = Field(index=True)
    seller_id: int = Field(index=True)
    total_amount: int
    platform_fee: int
    net_amount: int
    currency: str = "CDF"
    status: str = Field(default=EscrowStatus.HELD.value, index=True)
    payment_method: str = "wallet"  # wallet, cash
    release_after: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    released_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    auto_released: bool = False


class Wallet(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(unique=True)
    balance: int = 0
    currency: str = "CDF"


class WalletTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    wallet_id: int = Field(index=True, foreign_key="wallet.id")
    user_id: int = Field(index=True)
    amount: int
    kind: str  # escrow_release
    reference_id: Optional[int] = Field(default=None, index=True)  # request id
    balance_before: int
    balance_after: int
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    request_id: Optional[int] = Field(default=None, index=True)
    kind: str
    title: str
    message: str
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    expires_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None
