"""Read-only view of the device table owned by device management."""
from __future__ import annotations

from typing import Dict, Iterable, Optional

from sqlmodel import Session, select

from .database import storage_errors
from .models import Device


def get_device(session: Session, device_id: str) -> Optional[Device]:
    with storage_errors(session):
        return session.get(Device, device_id)


def device_exists(session: Session, device_id: str) -> bool:
    return get_device(session, device_id) is not None


def device_owner(session: Session, device_id: str) -> Optional[str]:
    device = get_device(session, device_id)
    return device.owner_id if device is not None else None


def devices_by_id(session: Session, device_ids: Iterable[str]) -> Dict[str, Device]:
    """Return the devices for ``device_ids`` keyed by id."""

    wanted = {device_id for device_id in device_ids if device_id}
    if not wanted:
        return {}
    with storage_errors(session):
        rows = session.exec(select(Device).where(Device.id.in_(wanted))).all()
    return {device.id: device for device in rows}


__all__ = ["device_exists", "device_owner", "devices_by_id", "get_device"]
