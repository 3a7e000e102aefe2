from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from ..auth import get_current_user_id
from ..database import get_session
from ..models.device import Device, DeviceCreate

router = APIRouter(
    prefix="/devices",
    tags=["Devices"]
)

@router.post("", response_model=Device)
def register_device(
    request: DeviceCreate,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id)
):
    existing_device = session.exec(
        select(Device).where(
            (Device.user_id == current_user_id) &
            (Device.fcm_token == request.fcm_token)
        )
    ).first()
    if existing_device:
        return existing_device

    device = Device(user_id=current_user_id, fcm_token=request.fcm_token, os_name=request.os_name)
    session.add(device)
    session.commit()
    session.refresh(device)
    return device

@router.delete("/{fcm_token}")
def unregister_device(
    fcm_token: str,
    session: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id)
):
    device = session.exec(
        select(Device).where(
            (Device.user_id == current_user_id) &
            (Device.fcm_token == fcm_token)
        )
    ).first()
    if device:
        session.delete(device)
        session.commit()
    return {"message": "Device removed"}
