"""SQLAlchemy model for room records."""

from sqlalchemy import Column, DateTime, Float, Integer, String, func

from app.db.base import Base, JSONType, new_id


class Room(Base):
    __tablename__ = "rooms"

    id = Column(String(36), primary_key=True, default=new_id)
    room_number = Column(String(64), nullable=False, unique=True)
    building_name = Column(String(255), nullable=False)
    floor_number = Column(Integer, nullable=False)
    # Populated later from the admin UI; imports always start empty.
    geofence_coordinates = Column(JSONType, nullable=False, default=list)
    base_altitude = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
