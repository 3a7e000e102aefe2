from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone

class DeviceBase(SQLModel):
    user_id: str = Field(index=True, max_length=128)
    fcm_token: Optional[str] = Field(default=None, max_length=255, index=True)
    os_name: Optional[str] = Field(default=None, max_length=20)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class Device(DeviceBase, table=True):
    device_id: Optional[int] = Field(default=None, primary_key=True)

class DeviceCreate(SQLModel):
    fcm_token: str = Field(max_length=255)
    os_name: Optional[str] = Field(default=None, max_length=20)
