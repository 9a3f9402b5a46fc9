"""
Property model - the agency's catalog.
The scheduling flow only reads it (status='available' rows).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Numeric, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    property_type: Mapped[str] = mapped_column(
        String(30), default="apartment"
    )  # apartment, house, commercial, land
    transaction_type: Mapped[str] = mapped_column(
        String(20), default="sale"
    )  # sale, rent, both
    status: Mapped[str] = mapped_column(
        String(20), default="available", nullable=False
    )  # available, reserved, sold, rented, inactive

    # Address
    address_street: Mapped[Optional[str]] = mapped_column(String(255))
    address_number: Mapped[Optional[str]] = mapped_column(String(20))
    address_neighborhood: Mapped[str] = mapped_column(String(120), nullable=False)
    address_city: Mapped[str] = mapped_column(String(120), nullable=False)
    address_state: Mapped[str] = mapped_column(String(2), default="SP", nullable=False)
    address_zipcode: Mapped[Optional[str]] = mapped_column(String(10))

    # Features
    bedrooms: Mapped[int] = mapped_column(Integer, default=0)
    bathrooms: Mapped[int] = mapped_column(Integer, default=0)
    parking_spots: Mapped[int] = mapped_column(Integer, default=0)
    area_total: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))

    # Prices
    sale_price: Mapped[Optional[float]] = mapped_column(Numeric(15, 2))
    rent_price: Mapped[Optional[float]] = mapped_column(Numeric(15, 2))
    condominium_fee: Mapped[Optional[float]] = mapped_column(Numeric(15, 2))

    # Media
    cover_image_url: Mapped[Optional[str]] = mapped_column(Text)
    images: Mapped[Optional[list]] = mapped_column(JSONB, default=list)

    is_featured: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_properties_status", "status"),
        Index("ix_properties_neighborhood", "address_neighborhood"),
    )

    def __repr__(self) -> str:
        return f"<Property {self.code} status={self.status}>"
