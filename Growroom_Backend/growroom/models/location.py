from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from growroom.db.session import Base


class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    owner = relationship("User", back_populates="rooms")
    sections = relationship("Section", back_populates="room", cascade="all, delete-orphan")


class Section(Base):
    """A tent/area inside a room. Automations and devices hang off sections."""

    __tablename__ = "sections"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    room_id = Column(Integer, ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    room = relationship("Room", back_populates="sections")
    devices = relationship("Device", back_populates="section", cascade="all, delete-orphan")
    automations = relationship("Automation", back_populates="section", cascade="all, delete-orphan")


class Device(Base):
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    # SENSOR, LIGHT, EXTRACTOR, HUMIDIFIER, DEHUMIDIFIER, IRRIGATION, CAMERA, ...
    device_type = Column(String, default="SENSOR")
    # Which device service speaks for this device: TAPO, TUYA, SONOFF, ESP32
    connector = Column(String, nullable=False, default="ESP32")
    external_id = Column(String, nullable=True)
    section_id = Column(Integer, ForeignKey("sections.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    section = relationship("Section", back_populates="devices")
