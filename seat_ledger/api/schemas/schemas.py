from typing import Any, Literal
from pydantic import BaseModel, Field


BusTypeName = Literal["SLEEPER", "CABIN"]
OpenStatus = Literal["booking", "hold", "payment"]


# -----------------------------
# Fleet
# -----------------------------


class LayoutConfigSchema(BaseModel):
    floors: int = Field(default=2, ge=1)
    rows: int = Field(default=0, ge=0)
    cols: int = Field(default=0, ge=0)
    active_seats: list[str] = Field(default_factory=list)
    seat_labels: dict[str, str] = Field(default_factory=dict)
    has_rear_bench: bool = False
    bench_floors: list[int] = Field(default_factory=list)
    has_floor_seats: bool = False
    floor_seat_count: int | None = Field(default=None, ge=0)


class BusCreate(BaseModel):
    plate: str = Field(min_length=1)
    type: BusTypeName
    layout_config: LayoutConfigSchema
    phone_number: str | None = None
    default_route_id: str | None = None


class BusResponse(BaseModel):
    id: str
    plate: str
    type: str
    status: str
    phone_number: str | None = None
    default_route_id: str | None = None
    layout_config: dict[str, Any]


class RouteCreate(BaseModel):
    name: str = Field(min_length=1)
    price: int = Field(ge=0)
    origin: str | None = None
    destination: str | None = None
    is_enhanced: bool = False


class RouteResponse(BaseModel):
    id: str
    name: str
    price: int
    origin: str | None = None
    destination: str | None = None
    is_enhanced: bool
    status: str


class TripCreate(BaseModel):
    departure_time: str
    route: str | None = None
    route_id: str | None = None
    bus_id: str | None = None
    type: BusTypeName | None = None
    base_price: int | None = Field(default=None, ge=0)
    name: str = ""
    driver: str | None = None
    direction: str | None = None


class SeatResponse(BaseModel):
    id: str
    label: str
    floor: int
    row: int
    col: int
    price: int
    status: str
    is_floor_seat: bool = False
    is_bench: bool = False


class TripResponse(BaseModel):
    id: str
    name: str
    route: str
    route_id: str | None = None
    departure_time: str
    license_plate: str
    bus_id: str | None = None
    type: str
    driver: str | None = None
    base_price: int
    direction: str | None = None
    seats: list[SeatResponse]


# -----------------------------
# Bookings
# -----------------------------


class PassengerSchema(BaseModel):
    name: str = ""
    phone: str
    email: str | None = None
    note: str = ""
    pickup_point: str = ""
    dropoff_point: str = ""


class PaymentSchema(BaseModel):
    paid_cash: int = Field(default=0, ge=0)
    paid_transfer: int = Field(default=0, ge=0)


class TicketInputSchema(BaseModel):
    seat_id: str
    price: int | None = Field(default=None, ge=0)
    pickup: str | None = None
    dropoff: str | None = None
    name: str | None = None
    phone: str | None = None
    note: str | None = None
    exact_bed: bool | None = None


class BookingItemInput(BaseModel):
    trip_id: str
    seat_ids: list[str] = Field(default_factory=list)
    tickets: list[TicketInputSchema] = Field(default_factory=list)


class BookingCreate(BaseModel):
    items: list[BookingItemInput] = Field(min_length=1)
    passenger: PassengerSchema
    payment: PaymentSchema | None = None
    status: OpenStatus | None = None


class BookingUpdate(BaseModel):
    items: list[BookingItemInput]
    passenger: PassengerSchema | None = None
    payment: PaymentSchema | None = None
    status: OpenStatus | None = None
    loaded_trip_ids: list[str] | None = None


class TicketResponse(BaseModel):
    seat_id: str
    price: int
    status: str | None = None
    pickup: str
    dropoff: str
    name: str
    phone: str
    note: str
    exact_bed: bool


class BookingItemResponse(BaseModel):
    trip_id: str
    trip_date: str | None = None
    route: str
    license_plate: str
    bus_type: str | None = None
    is_enhanced: bool
    price: int
    seat_ids: list[str]
    tickets: list[TicketResponse]


class PaidStateResponse(BaseModel):
    paid_cash: int
    paid_transfer: int


class BookingResponse(BaseModel):
    id: str
    order_code: str
    status: str
    passenger: PassengerSchema
    items: list[BookingItemResponse]
    total_price: int
    total_tickets: int
    payment: PaidStateResponse
    created_at: str
    updated_at: str


class CreateBookingResponse(BaseModel):
    bookings: list[BookingResponse]
    updated_trips: list[TripResponse]


class BookingMutationResponse(BaseModel):
    booking: BookingResponse
    updated_trips: list[TripResponse]
    action: str | None = None


class DeleteBookingResponse(BaseModel):
    booking_id: str
    updated_trips: list[TripResponse]


class SwapRequest(BaseModel):
    trip_id_a: str
    seat_id_a: str
    trip_id_b: str
    seat_id_b: str


class SwapResponse(BaseModel):
    bookings: list[BookingResponse]
    updated_trips: list[TripResponse]


class SeatTransferSchema(BaseModel):
    source_seat_id: str
    target_seat_id: str


class TransferRequest(BaseModel):
    booking_id: str
    from_trip_id: str
    to_trip_id: str
    seat_transfers: list[SeatTransferSchema] = Field(min_length=1)


class SeatMoveSchema(BaseModel):
    source_trip_id: str
    source_seat_id: str
    target_trip_id: str
    target_seat_id: str


class BulkTransferRequest(BaseModel):
    moves: list[SeatMoveSchema] = Field(min_length=1)


class TicketUpdateRequest(BaseModel):
    action: Literal["PAY", "REFUND"] | None = None
    payment: PaymentSchema | None = None
    trip_id: str | None = None
    pickup: str | None = None
    dropoff: str | None = None
    name: str | None = None
    phone: str | None = None
    note: str | None = None
    exact_bed: bool | None = None


class HistoryResponse(BaseModel):
    id: str
    booking_id: str
    action: str
    description: str
    details: dict[str, Any]
    performed_by: str | None = None
    timestamp: str


# -----------------------------
# Payments & maintenance
# -----------------------------


class PaymentRecordResponse(BaseModel):
    id: str
    booking_id: str
    total_amount: int
    cash_amount: int
    transfer_amount: int
    method: str
    type: str
    transaction_type: str
    transaction_label: str
    note: str
    details: dict[str, Any]
    performed_by: str | None = None
    timestamp: str


class MaintenanceLogResponse(BaseModel):
    kind: str
    action: str
    details: str
    route: str = ""
    date: str = ""
    seat: str = ""
    trip_id: str | None = None
    booking_id: str | None = None
    actual_price: int | None = None
    paid_amount: int | None = None


class SeatMaintenanceResponse(BaseModel):
    logs: list[MaintenanceLogResponse]
    fixed_count: int
    sync_count: int
    conflict_count: int


class PaymentMaintenanceResponse(BaseModel):
    logs: list[MaintenanceLogResponse]
    deleted_count: int
    fixed_count: int
    mismatch_count: int


class CompensateRequest(BaseModel):
    amount: int | None = None


# -----------------------------
# QR gateway
# -----------------------------


class QRPaymentCreate(BaseModel):
    amount: int = Field(gt=0)
    booking_id: str | None = None
    description: str = ""


class QRPaymentResponse(BaseModel):
    id: str
    status: Literal["pending", "success"]
    data: dict[str, Any]
    created_at: str
