"""Request bodies and response serialisation for the public API.

Wire names are camelCase, matching the gallery frontend.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from gallery_backend.store.models import DownloadEvent


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AllowanceRequest(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    activation_code: Optional[str] = Field(default=None, alias="activationCode")


class DownloadRequest(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    activation_code: Optional[str] = Field(default=None, alias="activationCode")
    image_src: Optional[str] = Field(default=None, alias="imageSrc")
    image_title: Optional[str] = Field(default=None, alias="imageTitle")
    user_agent: Optional[str] = Field(default=None, alias="userAgent")


class ActivationRequest(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    payment_id: Optional[str] = Field(default=None, alias="paymentId")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    features: Optional[list[str]] = None
    # Hard ceiling keeps timedelta construction in range; the configured
    # maximum is enforced by the service.
    validity_days: Optional[int] = Field(default=None, alias="validityDays", gt=0, le=36500)


class VerifyRequest(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    activation_code: Optional[str] = Field(default=None, alias="activationCode")


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def event_to_json(event: DownloadEvent) -> dict[str, Any]:
    return {
        "imageSrc": event.image_ref,
        "imageTitle": event.image_title,
        "timestamp": iso(event.timestamp),
        "ip": event.network_address,
        "unlimited": event.unlimited,
    }
