import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class Location(Base):
    __tablename__ = "locations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    sort_order = Column(Integer)
    photo_url = Column(String(1000))
    created_at = Column(DateTime, server_default=func.now())

    bins = relationship("Bin", back_populates="location")


class Bin(Base):
    __tablename__ = "bins"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    label = Column(String(255), nullable=False)
    location_id = Column(Uuid, ForeignKey("locations.id"))
    notes = Column(Text)
    photo_url = Column(String(1000))
    created_at = Column(DateTime, server_default=func.now())

    location = relationship("Location", back_populates="bins")
    items = relationship("Item", back_populates="bin")
    checkouts = relationship("Checkout", back_populates="bin")
    reservations = relationship("Reservation", back_populates="bin")


class ItemGroup(Base):
    __tablename__ = "item_groups"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    default_bin_id = Column(Uuid, ForeignKey("bins.id"))
    created_at = Column(DateTime, server_default=func.now())

    items = relationship("Item", back_populates="item_group")


class Item(Base):
    __tablename__ = "items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    item_group_id = Column(Uuid, ForeignKey("item_groups.id"), nullable=False)
    bin_id = Column(Uuid, ForeignKey("bins.id"))
    quantity_on_hand = Column(Integer, nullable=False, default=1)
    unit = Column(String(50), default="pcs")
    low_stock_threshold = Column(Integer)
    notes = Column(Text)
    created_at = Column(DateTime, server_default=func.now())

    item_group = relationship("ItemGroup", back_populates="items")
    bin = relationship("Bin", back_populates="items")
    checkouts = relationship("Checkout", back_populates="item")
    reservations = relationship("Reservation", back_populates="item")


class Checkout(Base):
    __tablename__ = "checkouts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    checkout_batch_id = Column(Uuid, index=True)
    borrower_name = Column(String(255))
    borrower_type = Column(String(50))
    club_name = Column(String(255))
    event_name = Column(String(255))
    item_id = Column(Uuid, ForeignKey("items.id"))
    bin_id = Column(Uuid, ForeignKey("bins.id"))
    quantity = Column(Integer)
    status = Column(String(20), nullable=False, default="checked_out")
    issue_type = Column(String(20))
    issue_resolved = Column(Boolean)
    due_back_at = Column(DateTime)
    checked_out_at = Column(DateTime, server_default=func.now())
    checked_in_at = Column(DateTime)
    notes = Column(Text)

    item = relationship("Item", back_populates="checkouts")
    bin = relationship("Bin", back_populates="checkouts")


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    borrower_name = Column(String(255), nullable=False)
    club_name = Column(String(255))
    event_name = Column(String(255))
    item_id = Column(Uuid, ForeignKey("items.id"))
    bin_id = Column(Uuid, ForeignKey("bins.id"))
    quantity = Column(Integer)
    status = Column(String(20), nullable=False, default="planned")
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime)
    notes = Column(Text)
    checkout_batch_id = Column(Uuid)
    created_at = Column(DateTime, server_default=func.now())

    item = relationship("Item", back_populates="reservations")
    bin = relationship("Bin", back_populates="reservations")


class QRCode(Base):
    __tablename__ = "qr_codes"
    __table_args__ = (UniqueConstraint("type", "target_id", name="uq_qr_codes_type_target"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(64), nullable=False, unique=True)
    type = Column(String(20), nullable=False)
    target_id = Column(Uuid, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64))
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Uuid)
    details = Column(Text)
    created_at = Column(DateTime, server_default=func.now())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(64), primary_key=True)
    full_name = Column(String(255))
    role = Column(String(20), nullable=False, default="viewer")
