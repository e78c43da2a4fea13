# seat_ledger/infrastructure/db/models.py

from sqlalchemy import (
    JSON,
    Boolean,
    String,
    Integer,
    DateTime,
    Enum,
    Text,
    CheckConstraint,
    ForeignKey,
    func,
)
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from seat_ledger.infrastructure.db.session import Base
from seat_ledger.domain.state_machine import BookingStatus, TicketStatus


def _uuid() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Bus(Base):
    __tablename__ = "buses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    plate: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    layout_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    default_route_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class Route(Base):
    __tablename__ = "routes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    origin: Mapped[str | None] = mapped_column(String(128), nullable=True)
    destination: Mapped[str | None] = mapped_column(String(128), nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_enhanced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_route_price_nonnegative"),
    )


class Trip(Base):
    """
    A scheduled departure. seats caches the generated layout with the last
    written seat statuses; bookings stay the authority for occupancy.
    seats_version is bumped on every write so concurrent writers collide.
    """

    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    route_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("routes.id"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    route: Mapped[str] = mapped_column(String(128), nullable=False)
    departure_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    license_plate: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    bus_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("buses.id"),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    driver: Mapped[str | None] = mapped_column(String(64), nullable=True)
    base_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    direction: Mapped[str | None] = mapped_column(String(16), nullable=True)
    seats: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    seats_version: Mapped[int] = mapped_column(Integer, nullable=False)

    bus: Mapped[Optional["Bus"]] = relationship(lazy="joined")

    __mapper_args__ = {"version_id_col": seats_version}

    __table_args__ = (
        CheckConstraint("base_price >= 0", name="ck_trip_base_price_nonnegative"),
    )


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    passenger_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    passenger_phone: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    passenger_email: Mapped[str | None] = mapped_column(String(128), nullable=True)
    passenger_note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    pickup_point: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    dropoff_point: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=_enum_values),
        nullable=False,
        default=BookingStatus.BOOKING,
    )
    total_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    items: Mapped[list["BookingItem"]] = relationship(
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingItem.position",
        collection_class=ordering_list("position"),
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("total_tickets >= 0", name="ck_booking_total_tickets_nonnegative"),
    )

    def item_for_trip(self, trip_id: str) -> "BookingItem | None":
        for item in self.items:
            if str(item.trip_id) == str(trip_id):
                return item
        return None

    def all_tickets(self) -> list["Ticket"]:
        return [ticket for item in self.items for ticket in item.tickets]


class BookingItem(Base):
    __tablename__ = "booking_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trip_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    trip_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    route: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    license_plate: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    bus_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_enhanced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    booking: Mapped[Booking] = relationship(back_populates="items")
    tickets: Mapped[list["Ticket"]] = relationship(
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="Ticket.position",
        collection_class=ordering_list("position"),
        lazy="selectin",
    )

    @property
    def seat_ids(self) -> list[str]:
        # Derived so seat ids and tickets can never drift apart.
        return [ticket.seat_id for ticket in self.tickets]

    def ticket_for_seat(self, seat_id: str) -> "Ticket | None":
        for ticket in self.tickets:
            if str(ticket.seat_id) == str(seat_id):
                return ticket
        return None


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    item_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("booking_items.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    seat_id: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[TicketStatus | None] = mapped_column(
        Enum(TicketStatus, name="ticket_status", values_callable=_enum_values),
        nullable=True,
    )
    pickup: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    dropoff: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    phone: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    exact_bed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    item: Mapped[BookingItem] = relationship(back_populates="tickets")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_ticket_price_nonnegative"),
    )


class Payment(Base):
    """
    One money movement. booking_id is deliberately not a foreign key:
    payments may outlive their booking and the maintenance job removes them.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cash_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transfer_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    method: Mapped[str] = mapped_column(String(16), nullable=False, default="cash")
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="payment")
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False, default="snapshot")
    transaction_label: Mapped[str] = mapped_column(String(16), nullable=False, default="thanh_toan")
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    performed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )


class BookingHistory(Base):
    __tablename__ = "booking_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    performed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )


class QRPayment(Base):
    __tablename__ = "qr_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )


class Role(Base):
    __tablename__ = "roles"

    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    permissions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
