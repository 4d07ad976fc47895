from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncPostBody(BaseModel):
    # The entry stays loosely typed here; its structure is checked with the
    # same rules the device applies to its own storage.
    entry: Any = None
    device_id: Any = Field(default="", alias="deviceId")
    device_name: Any = Field(default="", alias="deviceName")

    model_config = ConfigDict(populate_by_name=True)


class SyncDeleteBody(BaseModel):
    entry_id: Optional[str | int] = Field(default=None, alias="entryId")
    device_id: Any = Field(default="", alias="deviceId")
    device_name: Any = Field(default="", alias="deviceName")

    model_config = ConfigDict(populate_by_name=True)


class TokenRequest(BaseModel):
    pin: Any = None


class TokenResponse(BaseModel):
    success: bool = True
    token: str
    is_new_pin: Optional[bool] = Field(default=None, alias="isNewPin")

    model_config = ConfigDict(populate_by_name=True)


class RaceSummaryModel(BaseModel):
    race_id: str = Field(alias="raceId")
    entry_count: int = Field(alias="entryCount")
    device_count: int = Field(alias="deviceCount")
    last_updated: Optional[int] = Field(default=None, alias="lastUpdated")

    model_config = ConfigDict(populate_by_name=True)


class RaceListResponse(BaseModel):
    races: List[RaceSummaryModel]


class RaceDeleteResponse(BaseModel):
    success: bool = True
    race_id: str = Field(alias="raceId")

    model_config = ConfigDict(populate_by_name=True)


class PinStatusResponse(BaseModel):
    has_pin: bool = Field(alias="hasPin")

    model_config = ConfigDict(populate_by_name=True)


class ChangePinRequest(BaseModel):
    current_pin: Any = Field(default=None, alias="currentPin")
    new_pin: Any = Field(default=None, alias="newPin")

    model_config = ConfigDict(populate_by_name=True)


class ResetPinRequest(BaseModel):
    server_pin: Any = Field(default=None, alias="serverPin")

    model_config = ConfigDict(populate_by_name=True)


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
