from datetime import datetime, timezone
import logging

from fastapi import APIRouter, HTTPException, Query

from epg_aggregator.schemas import (
    ChannelLookupResponse,
    EPGRequest,
    EPGResponse,
    FetchStatusResponse,
    ProgramResponse,
)
from epg_aggregator.services.epg_query_service import (
    get_current_program,
    get_epg_data,
    lookup_channel_id,
    to_program_response,
)
from epg_aggregator.services.fetch_coordinator import get_fetch_coordinator
from epg_aggregator.services.scheduler_service import epg_scheduler


logger = logging.getLogger(__name__)

main_router = APIRouter()

@main_router.get("/")
async def root() -> dict:
    """Root endpoint with service information"""
    next_run = epg_scheduler.get_next_run_time()

    return {
        "service": "EPG Aggregator",
        "version": "0.1.0",
        "next_scheduled_fetch": next_run.isoformat() if next_run else None,
        "endpoints": {
            "fetch": "/fetch - Start (POST), inspect (GET /fetch/status) or cancel (DELETE) a refresh",
            "epg": "/epg - Get EPG for multiple channels (POST)",
            "now": "/epg/{channel_id}/now - Programme airing now",
            "lookup": "/channels/lookup?name= - Resolve a display name",
            "health": "/health - Health check"
        }
    }


@main_router.get("/health")
async def health_check() -> dict:
    """Health check endpoint"""
    coordinator = get_fetch_coordinator()
    return {
        "status": "ok",
        "scheduler": epg_scheduler.describe(),
        "fetching": coordinator.is_fetching(),
        "channels": len(coordinator.schedule),
        "channel_names": len(coordinator.channel_index),
    }


@main_router.post("/fetch", status_code=202)
async def trigger_fetch() -> dict:
    """
    Start an EPG refresh in the background

    Progress is available from /fetch/status while it runs
    """
    logger.info("Manual EPG refresh triggered via API")
    coordinator = get_fetch_coordinator()
    if not coordinator.start_refresh():
        return {"status": "skipped", "message": "EPG fetch operation already in progress"}
    return {"status": "started"}


@main_router.get("/fetch/status", response_model=FetchStatusResponse)
async def fetch_status() -> FetchStatusResponse:
    """Live progress of the running refresh and the outcome of the last one"""
    coordinator = get_fetch_coordinator()
    return FetchStatusResponse(
        fetching=coordinator.is_fetching(),
        progress=coordinator.progress,
        updated_at=coordinator.updated_at.isoformat() if coordinator.updated_at else None,
        channels=len(coordinator.schedule),
        channel_names=len(coordinator.channel_index),
        last_result=coordinator.last_result,
    )


@main_router.delete("/fetch")
async def cancel_fetch() -> dict:
    """Cancel the running refresh"""
    cancelled = await get_fetch_coordinator().cancel()
    return {"status": "cancelled" if cancelled else "idle"}


@main_router.post("/epg", response_model=EPGResponse)
async def get_epg(request: EPGRequest) -> EPGResponse:
    """
    Get EPG data for multiple channels within a time window

    Args:
        request: EPG request with channels, timezone and date range

    Returns:
        EPG data grouped by channel id with timestamps in requested timezone
    """
    return get_epg_data(get_fetch_coordinator().schedule, request)


@main_router.get("/epg/{channel_id}/now", response_model=ProgramResponse)
async def get_now_playing(channel_id: str) -> ProgramResponse:
    """Programme airing right now on a channel"""
    program = get_current_program(
        get_fetch_coordinator().schedule,
        channel_id,
        datetime.now(timezone.utc),
    )
    if program is None:
        raise HTTPException(status_code=404, detail=f"No programme airing on {channel_id}")
    return to_program_response(program)


@main_router.get("/channels/lookup", response_model=ChannelLookupResponse)
async def lookup_channel(name: str = Query(..., min_length=1)) -> ChannelLookupResponse:
    """Resolve a channel display name to its channel id"""
    channel_id = lookup_channel_id(get_fetch_coordinator().channel_index, name)
    if channel_id is None:
        raise HTTPException(status_code=404, detail=f"Unknown channel name: {name}")
    return ChannelLookupResponse(name=name, channel_id=channel_id)
