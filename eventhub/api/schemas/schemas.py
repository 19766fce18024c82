from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class TicketBookingRequest(BaseModel):
    event_id: str
    tier_name: str
    quantity: int = Field(gt=0)
    payment_method_ref: str
    promo_code: str | None = None
    special_requests: str | None = Field(default=None, max_length=1000)


class BookingResponse(BaseModel):
    booking_id: str
    status: str
    ticket_id: str | None = None
    subtotal: Decimal
    fees: Decimal
    total: Decimal
    currency: str
    failure_reason: str | None = None


class TicketTransferResponse(BaseModel):
    from_user_id: str
    to_user_id: str
    reason: str | None = None
    transferred_at: str


class TicketResponse(BaseModel):
    id: str
    event_id: str
    user_id: str
    booking_id: str
    tier_name: str
    quantity: int
    total_amount: Decimal
    currency: str
    status: str
    payment_status: str
    code: str
    payment_id: str | None = None
    special_requests: str | None = None
    checked_in_at: str | None = None
    check_in_location: str | None = None
    verified_by: str | None = None
    transfers: list[TicketTransferResponse] = []
    created_at: str


class TicketCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class TicketCancelResponse(BaseModel):
    ticket_id: str
    booking_status: str
    refund_id: str | None = None


class TicketTransferRequest(BaseModel):
    to_user_id: str = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=255)


class CheckInRequest(BaseModel):
    location: str | None = Field(default=None, max_length=128)


class TicketTierCreate(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    price: Decimal = Field(ge=0, decimal_places=2)
    quantity: int = Field(ge=0)


class EventCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    category: str
    venue_name: str
    venue_address: str
    venue_city: str
    venue_country: str
    venue_capacity: int = Field(gt=0)
    starts_at: datetime
    ends_at: datetime
    timezone: str = "UTC"
    currency: str = Field(default="USD", min_length=3, max_length=3)
    tiers: list[TicketTierCreate]


class EventUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    category: str | None = None
    venue_name: str | None = None
    venue_address: str | None = None
    venue_city: str | None = None
    venue_country: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    timezone: str | None = None
    status: Literal["draft", "published", "cancelled", "postponed", "completed"] | None = None


class TicketTierResponse(BaseModel):
    name: str
    price: Decimal
    quantity: int
    available: int


class EventResponse(BaseModel):
    id: str
    organizer_id: str
    title: str
    description: str
    category: str
    venue_name: str
    venue_address: str
    venue_city: str
    venue_country: str
    venue_capacity: int
    starts_at: str
    ends_at: str
    timezone: str
    currency: str
    status: str
    tiers: list[TicketTierResponse]


class EventListResponse(BaseModel):
    events: list[EventResponse]
    page: int
    limit: int
    total: int
    pages: int


class TierAvailabilityResponse(BaseModel):
    tier_name: str
    price: Decimal
    quantity: int
    sold: int
    held: int
    available: int


class PaymentResponse(BaseModel):
    id: str
    ticket_id: str
    booking_id: str
    amount: Decimal
    currency: str
    status: str
    gateway_txn_id: str | None = None
    failure_reason: str | None = None
    refund_amount: Decimal | None = None
    refunded_at: str | None = None
    created_at: str


class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    message: str
    channels: list[str]
    read: bool
    created_at: str


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    unread_count: int


class NotificationsReadResponse(BaseModel):
    updated: int


class OutboxNotificationResponse(BaseModel):
    id: str
    user_id: str
    type: str
    payload: dict
    channels: list[str]
    status: str
    attempts: int
    created_at: str


class SweepResponse(BaseModel):
    expired: int
    committed: int
    refunded: int
