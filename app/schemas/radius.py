"""
RADIUS Schemas

Bodies posted by the RADIUS-over-REST daemon use the attribute names as
JSON keys ("User-Name", "NAS-IP-Address", ...). Counters may arrive as
numbers, numeric strings or "" (missing).
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


ACCT_START = "Start"
ACCT_INTERIM = "Interim-Update"
ACCT_STOP = "Stop"
ACCT_STATUS_TYPES = (ACCT_START, ACCT_INTERIM, ACCT_STOP)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class RadiusAuthRequest(BaseModel):
    user_name: str = Field("", alias="User-Name")
    user_password: str = Field("", alias="User-Password")
    nas_identifier: Optional[str] = Field(None, alias="NAS-Identifier")
    nas_ip_address: Optional[str] = Field(None, alias="NAS-IP-Address")
    nas_port_id: Optional[str] = Field(None, alias="NAS-Port-Id")
    calling_station_id: Optional[str] = Field(None, alias="Calling-Station-Id")
    called_station_id: Optional[str] = Field(None, alias="Called-Station-Id")

    class Config:
        populate_by_name = True


class RadiusAcctRequest(BaseModel):
    acct_status_type: str = Field(..., alias="Acct-Status-Type")
    acct_session_id: str = Field(..., alias="Acct-Session-Id")
    user_name: str = Field("", alias="User-Name")
    nas_identifier: Optional[str] = Field(None, alias="NAS-Identifier")
    nas_ip_address: Optional[str] = Field(None, alias="NAS-IP-Address")
    nas_port_id: Optional[str] = Field(None, alias="NAS-Port-Id")
    framed_ip_address: Optional[str] = Field(None, alias="Framed-IP-Address")
    calling_station_id: Optional[str] = Field(None, alias="Calling-Station-Id")
    called_station_id: Optional[str] = Field(None, alias="Called-Station-Id")
    acct_session_time: Optional[int] = Field(None, alias="Acct-Session-Time")
    acct_input_octets: Optional[int] = Field(None, alias="Acct-Input-Octets")
    acct_output_octets: Optional[int] = Field(None, alias="Acct-Output-Octets")
    acct_terminate_cause: Optional[str] = Field(None, alias="Acct-Terminate-Cause")

    class Config:
        populate_by_name = True

    @field_validator(
        "acct_session_time", "acct_input_octets", "acct_output_octets",
        "framed_ip_address", "acct_terminate_cause",
        mode="before",
    )
    @classmethod
    def _empty_is_missing(cls, value):
        return _blank_to_none(value)

    @field_validator("acct_status_type")
    @classmethod
    def _known_status_type(cls, value: str) -> str:
        if value not in ACCT_STATUS_TYPES:
            raise ValueError(f"Acct-Status-Type must be one of {', '.join(ACCT_STATUS_TYPES)}")
        return value

    @field_validator("acct_session_id")
    @classmethod
    def _session_id_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Acct-Session-Id is required")
        return value.strip()


class RadiusSessionResponse(BaseModel):
    id: str
    router_id: Optional[str]
    voucher_id: Optional[str]
    acct_session_id: str
    username: str
    nas_ip: Optional[str]
    framed_ip: Optional[str]
    session_time: Optional[int]
    input_octets: Optional[int]
    output_octets: Optional[int]
    terminate_cause: Optional[str]
    started_at: Optional[datetime]
    stopped_at: Optional[datetime]

    class Config:
        from_attributes = True


class RadiusAuthAttemptResponse(BaseModel):
    id: str
    router_id: Optional[str]
    voucher_id: Optional[str]
    username: str
    nas_ip: Optional[str]
    accepted: bool
    reason: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True
