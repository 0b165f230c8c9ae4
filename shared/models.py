from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum, ForeignKey, Integer, String, Text, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from shared.timeutils import utcnow

# SQLite only autoincrements INTEGER PRIMARY KEY
PK = BigInteger().with_variant(Integer, "sqlite")

USER_ROLES = ("admin", "supervisor", "operator", "bot")
MILEAGE_SOURCES = ("journey", "fuel_up", "maintenance", "manual")
JOURNEY_ORIGINS = ("driver", "ghost_segment", "ghost_adjustment")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(PK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(Enum(*USER_ROLES, name="user_role"), nullable=False, default="operator")


class Vehicle(Base):
    __tablename__ = "vehicles"
    id: Mapped[int] = mapped_column(PK, primary_key=True, autoincrement=True)
    plate: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def as_dict(self):
        return {"id": self.id, "plate": self.plate, "model": self.model, "created_at": self.created_at}


class Journey(Base):
    __tablename__ = "journeys"
    __table_args__ = (
        CheckConstraint("end_mileage IS NULL OR end_mileage >= start_mileage", name="ck_journey_mileage"),
        CheckConstraint("end_time IS NULL OR end_time >= start_time", name="ck_journey_time"),
    )
    id: Mapped[int] = mapped_column(PK, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id"), nullable=False, index=True)
    operator_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    supervisor_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    start_mileage: Mapped[int] = mapped_column(Integer, nullable=False)
    end_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    origin: Mapped[str] = mapped_column(Enum(*JOURNEY_ORIGINS, name="journey_origin"), nullable=False, default="driver")
    auto_close_attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_close_last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)

    vehicle: Mapped["Vehicle"] = relationship("Vehicle")
    operator: Mapped["User"] = relationship("User", foreign_keys=[operator_id])

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def distance(self) -> int | None:
        if self.end_mileage is None:
            return None
        return self.end_mileage - self.start_mileage

    def as_dict(self):
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "operator_id": self.operator_id,
            "supervisor_id": self.supervisor_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "start_mileage": self.start_mileage,
            "end_mileage": self.end_mileage,
            "distance": self.distance,
            "notes": self.notes,
            "origin": self.origin,
            "auto_close_attempt_count": self.auto_close_attempt_count,
            "auto_close_last_error": self.auto_close_last_error,
        }


class MileageEntry(Base):
    """One odometer observation. Rows are append-only."""
    __tablename__ = "mileage_entries"
    id: Mapped[int] = mapped_column(PK, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id"), nullable=False, index=True)
    km: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(Enum(*MILEAGE_SOURCES, name="mileage_source"), nullable=False)
    origin_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    def as_dict(self):
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "km": self.km,
            "source": self.source,
            "origin_id": self.origin_id,
            "recorded_at": self.recorded_at,
        }


class ImmutableEntryError(Exception):
    pass


@event.listens_for(MileageEntry, "before_update")
def _refuse_update(mapper, connection, target):
    raise ImmutableEntryError(f"mileage entry {target.id} is immutable")


@event.listens_for(MileageEntry, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ImmutableEntryError(f"mileage entry {target.id} cannot be deleted")
