from pydantic import BaseModel, Field, field_validator, model_validator

from epg_aggregator.utils.timezone import parse_iso8601_to_utc, resolve_timezone, DateFormatError


class ChannelEPGRequest(BaseModel):
    """Single channel EPG request"""
    channel_id: str = Field(..., description="XMLTV channel id")


class EPGRequest(BaseModel):
    """EPG data request"""
    channels: list[ChannelEPGRequest] = Field(..., min_length=1, description="List of channels")
    timezone: str = Field(default="UTC", description="Timezone for response timestamps (e.g., 'UTC', 'Europe/London', 'America/New_York')")
    from_date: str = Field(..., description="ISO8601 datetime for start of EPG range (e.g., '2025-10-09T00:00:00Z')")
    to_date: str = Field(..., description="ISO8601 datetime for end of EPG range (e.g., '2025-10-10T00:00:00Z')")

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate timezone string"""
        try:
            resolve_timezone(v)
            return v
        except DateFormatError:
            raise ValueError(f"Invalid timezone: {v}. Must be a valid IANA timezone (e.g., 'Europe/London', 'America/New_York') or 'UTC'")

    @field_validator('from_date', 'to_date')
    @classmethod
    def validate_date_format(cls, v: str) -> str:
        """Validate ISO8601 datetime format using centralized parser"""
        try:
            parse_iso8601_to_utc(v)
            return v
        except DateFormatError:
            raise ValueError(f"Invalid datetime format: {v}. Must be valid ISO8601 format (e.g., '2025-10-09T00:00:00Z' or '2025-10-09T00:00:00+00:00')")

    @model_validator(mode='after')
    def validate_date_range(self):
        """Validate that from_date is before to_date using centralized parser"""
        if parse_iso8601_to_utc(self.from_date) >= parse_iso8601_to_utc(self.to_date):
            raise ValueError(f"from_date ({self.from_date}) must be before to_date ({self.to_date})")

        return self


class ProgramResponse(BaseModel):
    """Single program data"""
    channel_id: str
    start_time: str
    stop_time: str
    title: str
    description: str | None


class EPGResponse(BaseModel):
    """EPG data response"""
    timestamp: str
    timezone: str = Field(..., description="Timezone used for all timestamps in response")
    channels_requested: int
    channels_found: int
    total_programs: int
    epg: dict[str, list[ProgramResponse]] = Field(..., description="EPG data grouped by channel id")


class ChannelLookupResponse(BaseModel):
    """Display name resolution result"""
    name: str
    channel_id: str


class FetchStatusResponse(BaseModel):
    """State of the refresh machinery"""
    fetching: bool
    progress: float = Field(..., ge=0.0, le=1.0)
    updated_at: str | None = None
    channels: int
    channel_names: int
    last_result: dict | None = None
