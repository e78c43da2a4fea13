from datetime import date, datetime
import logging
import os

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from seat_ledger.infrastructure.db.session import SessionLocal
from seat_ledger.application.booking_service import (
    BookingService,
    ItemInput,
    PassengerInfo,
    SeatMove,
    TicketChanges,
    TicketInput,
)
from seat_ledger.application.maintenance_service import MaintenanceService
from seat_ledger.application.payment_ledger import PaymentState
from seat_ledger.api.schemas.schemas import (
    BookingCreate,
    BookingItemInput,
    BookingItemResponse,
    BookingMutationResponse,
    BookingResponse,
    BookingUpdate,
    BulkTransferRequest,
    BusCreate,
    BusResponse,
    CompensateRequest,
    CreateBookingResponse,
    DeleteBookingResponse,
    HistoryResponse,
    MaintenanceLogResponse,
    PaidStateResponse,
    PassengerSchema,
    PaymentMaintenanceResponse,
    PaymentRecordResponse,
    PaymentSchema,
    QRPaymentCreate,
    QRPaymentResponse,
    RouteCreate,
    RouteResponse,
    SeatMaintenanceResponse,
    SeatResponse,
    SwapRequest,
    SwapResponse,
    TicketResponse,
    TicketUpdateRequest,
    TransferRequest,
    TripCreate,
    TripResponse,
)
from seat_ledger.domain.exceptions import (
    EntityNotFoundError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    SeatConflictError,
    SeatLedgerError,
)
from seat_ledger.domain.permissions import (
    AuthSession,
    BOOK_TICKET,
    CREATE_TRIP,
    MANAGE_SETTINGS,
    VIEW_FINANCE,
)
from seat_ledger.domain.phone import order_code
from seat_ledger.domain.seat_layout import BusType, LayoutConfig, Seat
from seat_ledger.domain.state_machine import BookingStatus
from seat_ledger.infrastructure.db.models import Booking, Payment, QRPayment, Trip
from seat_ledger.infrastructure.repositories.fleet_repository import FleetRepository
from seat_ledger.infrastructure.repositories.payment_repository import PaymentRepository
from seat_ledger.infrastructure.repositories.qr_repository import QRPaymentRepository
from seat_ledger.infrastructure.repositories.role_repository import RoleRepository
from seat_ledger.infrastructure.repositories.trip_repository import TripRepository


router = APIRouter()
logger = logging.getLogger(__name__)

DEFAULT_USER_ROLE = os.getenv("DEFAULT_USER_ROLE", "sale")
QR_SIMULATION_ENVS = {"dev", "test"}


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_auth_session(
    x_user_role: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> AuthSession:
    role = x_user_role or DEFAULT_USER_ROLE
    permissions = RoleRepository(db).permissions_for(role)
    return AuthSession.for_role(x_user_name or role, role, permissions)


def _http_error(exc: SeatLedgerError) -> HTTPException:
    if isinstance(exc, PermissionDeniedError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, EntityNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (SeatConflictError, InvalidStateTransitionError)):
        code = status.HTTP_409_CONFLICT
    else:
        # BookingValidationError and anything else the domain rejects.
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# -----------------------------
# Response builders
# -----------------------------


def _trip_response(trip: Trip, seats: list[Seat] | None = None) -> TripResponse:
    if seats is None:
        seats = [Seat.from_dict(raw) for raw in trip.seats or []]
    return TripResponse(
        id=trip.id,
        name=trip.name,
        route=trip.route,
        route_id=trip.route_id,
        departure_time=trip.departure_time.isoformat(),
        license_plate=trip.license_plate,
        bus_id=trip.bus_id,
        type=trip.type,
        driver=trip.driver,
        base_price=trip.base_price,
        direction=trip.direction,
        seats=[SeatResponse(**seat.to_dict()) for seat in seats],
    )


def _booking_response(booking: Booking, paid: PaymentState | None = None) -> BookingResponse:
    paid = paid or PaymentState()
    return BookingResponse(
        id=booking.id,
        order_code=order_code(booking.id),
        status=booking.status.value,
        passenger=PassengerSchema(
            name=booking.passenger_name,
            phone=booking.passenger_phone,
            email=booking.passenger_email,
            note=booking.passenger_note,
            pickup_point=booking.pickup_point,
            dropoff_point=booking.dropoff_point,
        ),
        items=[
            BookingItemResponse(
                trip_id=item.trip_id,
                trip_date=_isoformat(item.trip_date),
                route=item.route,
                license_plate=item.license_plate,
                bus_type=item.bus_type,
                is_enhanced=item.is_enhanced,
                price=item.price,
                seat_ids=item.seat_ids,
                tickets=[
                    TicketResponse(
                        seat_id=ticket.seat_id,
                        price=ticket.price,
                        status=ticket.status.value if ticket.status else None,
                        pickup=ticket.pickup,
                        dropoff=ticket.dropoff,
                        name=ticket.name,
                        phone=ticket.phone,
                        note=ticket.note,
                        exact_bed=ticket.exact_bed,
                    )
                    for ticket in item.tickets
                ],
            )
            for item in booking.items
        ],
        total_price=booking.total_price,
        total_tickets=booking.total_tickets,
        payment=PaidStateResponse(paid_cash=paid.paid_cash, paid_transfer=paid.paid_transfer),
        created_at=booking.created_at.isoformat(),
        updated_at=booking.updated_at.isoformat(),
    )


def _payment_record_response(payment: Payment) -> PaymentRecordResponse:
    return PaymentRecordResponse(
        id=payment.id,
        booking_id=payment.booking_id,
        total_amount=payment.total_amount,
        cash_amount=payment.cash_amount,
        transfer_amount=payment.transfer_amount,
        method=payment.method,
        type=payment.type,
        transaction_type=payment.transaction_type,
        transaction_label=payment.transaction_label,
        note=payment.note,
        details=payment.details or {},
        performed_by=payment.performed_by,
        timestamp=payment.timestamp.isoformat(),
    )


def _qr_response(record: QRPayment) -> QRPaymentResponse:
    return QRPaymentResponse(
        id=record.id,
        status=record.status,
        data=record.data or {},
        created_at=record.created_at.isoformat(),
    )


def _items(items: list[BookingItemInput]) -> list[ItemInput]:
    return [
        ItemInput(
            trip_id=item.trip_id,
            seat_ids=list(item.seat_ids),
            tickets=[TicketInput(**ticket.model_dump()) for ticket in item.tickets],
        )
        for item in items
    ]


def _passenger(passenger: PassengerSchema | None) -> PassengerInfo | None:
    if passenger is None:
        return None
    return PassengerInfo(**passenger.model_dump())


def _payment_state(payment: PaymentSchema | None) -> PaymentState | None:
    if payment is None:
        return None
    return PaymentState(paid_cash=payment.paid_cash, paid_transfer=payment.paid_transfer)


def _mutation_response(service: BookingService, booking: Booking, trips: list[Trip], action: str | None = None):
    return BookingMutationResponse(
        booking=_booking_response(booking, service.paid_state(booking.id)),
        updated_trips=[_trip_response(trip) for trip in trips],
        action=action,
    )


# -----------------------------
# Health & fleet
# -----------------------------


@router.get("/health")
def health():
    return {"message": "Seat ledger is running"}


@router.get("/buses", response_model=list[BusResponse])
def list_buses(db: Session = Depends(get_db)):
    return [
        BusResponse(
            id=bus.id,
            plate=bus.plate,
            type=bus.type,
            status=bus.status,
            phone_number=bus.phone_number,
            default_route_id=bus.default_route_id,
            layout_config=bus.layout_config or {},
        )
        for bus in FleetRepository(db).list_buses()
    ]


@router.post("/buses", response_model=BusResponse, status_code=status.HTTP_201_CREATED)
def create_bus(
    request: BusCreate,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    try:
        auth.require(MANAGE_SETTINGS)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc

    bus = FleetRepository(db).create_bus(
        plate=request.plate,
        bus_type=BusType(request.type),
        layout_config=LayoutConfig.from_dict(request.layout_config.model_dump()),
        phone_number=request.phone_number,
        default_route_id=request.default_route_id,
    )
    db.flush()
    return BusResponse(
        id=bus.id,
        plate=bus.plate,
        type=bus.type,
        status=bus.status,
        phone_number=bus.phone_number,
        default_route_id=bus.default_route_id,
        layout_config=bus.layout_config,
    )


@router.get("/routes", response_model=list[RouteResponse])
def list_routes(db: Session = Depends(get_db)):
    return [
        RouteResponse(
            id=route.id,
            name=route.name,
            price=route.price,
            origin=route.origin,
            destination=route.destination,
            is_enhanced=route.is_enhanced,
            status=route.status,
        )
        for route in FleetRepository(db).list_routes()
    ]


@router.post("/routes", response_model=RouteResponse, status_code=status.HTTP_201_CREATED)
def create_route(
    request: RouteCreate,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    try:
        auth.require(MANAGE_SETTINGS)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc

    route = FleetRepository(db).create_route(
        name=request.name,
        price=request.price,
        origin=request.origin,
        destination=request.destination,
        is_enhanced=request.is_enhanced,
    )
    db.flush()
    return RouteResponse(
        id=route.id,
        name=route.name,
        price=route.price,
        origin=route.origin,
        destination=route.destination,
        is_enhanced=route.is_enhanced,
        status=route.status,
    )


# -----------------------------
# Trips
# -----------------------------


@router.get("/trips", response_model=list[TripResponse])
def list_trips(
    on_date: date | None = None,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        trips = service.list_trips(on_date)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return [_trip_response(trip, seats) for trip, seats in trips]


@router.post("/trips", response_model=TripResponse, status_code=status.HTTP_201_CREATED)
def create_trip(
    request: TripCreate,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    try:
        departure_time = datetime.fromisoformat(request.departure_time)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid departure_time format. Use ISO format.",
        ) from exc

    fleet = FleetRepository(db)
    try:
        auth.require(CREATE_TRIP)
        bus = fleet.get_bus(request.bus_id) if request.bus_id else None
        route = fleet.get_route(request.route_id) if request.route_id else None
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc

    route_name = request.route or (route.name if route is not None else None)
    if not route_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either route or route_id is required",
        )

    trip = TripRepository(db).create_trip(
        route=route_name,
        departure_time=departure_time,
        bus=bus,
        route_ref=route,
        base_price=request.base_price,
        name=request.name,
        driver=request.driver,
        direction=request.direction,
        bus_type=request.type,
    )
    db.flush()
    logger.info("Created trip %s on %s with %s seats", trip.id, trip.route, len(trip.seats))
    return _trip_response(trip)


@router.get("/trips/{trip_id}", response_model=TripResponse)
def get_trip(
    trip_id: str,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        trip, seats = service.trip_seats(trip_id)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return _trip_response(trip, seats)


# -----------------------------
# Bookings
# -----------------------------


@router.get("/bookings", response_model=list[BookingResponse])
def list_bookings(
    on_date: date | None = None,
    include_cancelled: bool = True,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        bookings = service.list_bookings(on_date, include_cancelled)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    paid = service.paid_states([booking.id for booking in bookings])
    return [_booking_response(booking, paid.get(booking.id)) for booking in bookings]


@router.get("/bookings/lookup", response_model=list[BookingResponse])
def lookup_bookings(
    q: str,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        bookings = service.find_bookings(q)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    paid = service.paid_states([booking.id for booking in bookings])
    return [_booking_response(booking, paid.get(booking.id)) for booking in bookings]


@router.post("/bookings", response_model=CreateBookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: BookingCreate,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        result = service.create_booking(
            _items(request.items),
            _passenger(request.passenger),
            _payment_state(request.payment),
            BookingStatus(request.status) if request.status else None,
        )
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc

    paid = service.paid_states([booking.id for booking in result.bookings])
    return CreateBookingResponse(
        bookings=[_booking_response(booking, paid.get(booking.id)) for booking in result.bookings],
        updated_trips=[_trip_response(trip) for trip in result.updated_trips],
    )


@router.post("/bookings/swap", response_model=SwapResponse)
def swap_seats(
    request: SwapRequest,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        result = service.swap_seats(request.trip_id_a, request.seat_id_a, request.trip_id_b, request.seat_id_b)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc

    paid = service.paid_states([booking.id for booking in result.bookings])
    return SwapResponse(
        bookings=[_booking_response(booking, paid.get(booking.id)) for booking in result.bookings],
        updated_trips=[_trip_response(trip) for trip in result.trips],
    )


@router.post("/bookings/transfer", response_model=BookingMutationResponse)
def transfer_seats(
    request: TransferRequest,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        result = service.transfer_seats(
            request.booking_id,
            request.from_trip_id,
            request.to_trip_id,
            [(pair.source_seat_id, pair.target_seat_id) for pair in request.seat_transfers],
        )
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return _mutation_response(service, result.booking, result.updated_trips)


@router.post("/bookings/bulk-transfer")
def bulk_transfer(
    request: BulkTransferRequest,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        service.bulk_transfer([SeatMove(**move.model_dump()) for move in request.moves])
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return {"moved": len(request.moves)}


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        booking = service.get_booking(booking_id)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking, service.paid_state(booking.id))


@router.put("/bookings/{booking_id}", response_model=BookingMutationResponse)
def update_booking(
    booking_id: str,
    request: BookingUpdate,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        result = service.update_booking(
            booking_id,
            _items(request.items),
            passenger=_passenger(request.passenger),
            payment=_payment_state(request.payment),
            status=BookingStatus(request.status) if request.status else None,
            loaded_trip_ids=request.loaded_trip_ids,
        )
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return _mutation_response(service, result.booking, result.updated_trips)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingMutationResponse)
def cancel_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        result = service.cancel_booking(booking_id)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return _mutation_response(service, result.booking, result.updated_trips)


@router.delete("/bookings/{booking_id}", response_model=DeleteBookingResponse)
def delete_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        trips = service.delete_booking(booking_id)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return DeleteBookingResponse(
        booking_id=booking_id,
        updated_trips=[_trip_response(trip) for trip in trips],
    )


@router.get("/bookings/{booking_id}/history", response_model=list[HistoryResponse])
def booking_history(
    booking_id: str,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    service = BookingService(db, auth)
    try:
        entries = service.booking_history(booking_id)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return [
        HistoryResponse(
            id=entry.id,
            booking_id=entry.booking_id,
            action=entry.action,
            description=entry.description,
            details=entry.details or {},
            performed_by=entry.performed_by,
            timestamp=entry.timestamp.isoformat(),
        )
        for entry in entries
    ]


@router.patch("/bookings/{booking_id}/tickets/{seat_id}", response_model=BookingMutationResponse)
def update_ticket(
    booking_id: str,
    seat_id: str,
    request: TicketUpdateRequest,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    changes = TicketChanges(**request.model_dump(exclude={"payment"}), payment=_payment_state(request.payment))
    service = BookingService(db, auth)
    try:
        result = service.update_ticket(booking_id, seat_id, changes)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return _mutation_response(service, result.booking, result.updated_trips, result.action)


# -----------------------------
# Payments & maintenance
# -----------------------------


@router.get("/payments", response_model=list[PaymentRecordResponse])
def list_payments(
    booking_id: str | None = None,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    try:
        auth.require(VIEW_FINANCE)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return [_payment_record_response(payment) for payment in PaymentRepository(db).list_payments(booking_id)]


@router.post("/maintenance/fix-seats", response_model=SeatMaintenanceResponse)
def fix_seats(
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    try:
        result = MaintenanceService(db, auth).fix_seats()
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return SeatMaintenanceResponse(
        logs=[MaintenanceLogResponse(**log.to_dict()) for log in result.logs],
        fixed_count=result.fixed_count,
        sync_count=result.sync_count,
        conflict_count=result.conflict_count,
    )


@router.post("/maintenance/fix-payments", response_model=PaymentMaintenanceResponse)
def fix_payments(
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    try:
        result = MaintenanceService(db, auth).fix_payments()
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return PaymentMaintenanceResponse(
        logs=[MaintenanceLogResponse(**log.to_dict()) for log in result.logs],
        deleted_count=result.deleted_count,
        fixed_count=result.fixed_count,
        mismatch_count=result.mismatch_count,
    )


@router.post(
    "/maintenance/payments/{booking_id}/compensate",
    response_model=PaymentRecordResponse,
    status_code=status.HTTP_201_CREATED,
)
def compensate_payment(
    booking_id: str,
    request: CompensateRequest,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    try:
        payment = MaintenanceService(db, auth).compensate_payment(booking_id, request.amount)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc
    return _payment_record_response(payment)


# -----------------------------
# QR gateway
# -----------------------------


def _require_booking_permission(auth: AuthSession) -> None:
    try:
        auth.require(BOOK_TICKET)
    except SeatLedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/qr-payments", response_model=QRPaymentResponse | None)
def get_qr_payment(
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    _require_booking_permission(auth)
    record = QRPaymentRepository(db).get()
    return _qr_response(record) if record is not None else None


@router.post("/qr-payments", response_model=QRPaymentResponse, status_code=status.HTTP_201_CREATED)
def create_qr_payment(
    request: QRPaymentCreate,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    _require_booking_permission(auth)
    record = QRPaymentRepository(db).create(request.model_dump())
    logger.info("QR payment requested for %s", request.amount)
    return _qr_response(record)


@router.delete("/qr-payments", status_code=status.HTTP_204_NO_CONTENT)
def delete_qr_payment(
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    _require_booking_permission(auth)
    QRPaymentRepository(db).delete()


@router.post("/qr-payments/simulate-success", response_model=QRPaymentResponse)
def simulate_qr_success(
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(get_auth_session),
):
    if os.getenv("APP_ENV", "dev") not in QR_SIMULATION_ENVS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    _require_booking_permission(auth)
    record = QRPaymentRepository(db).simulate_success()
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No pending QR payment",
        )
    return _qr_response(record)
