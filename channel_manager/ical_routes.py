"""
iCal Export & Conflict API Routes
=================================

- GET  /api/ical/export/property/{property_id}.ics
- GET  /api/ical/export/property/{property_id}/room/{room_id}.ics
- GET  /api/conflicts
- POST /api/conflicts/resolve
"""

from datetime import date
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import Response
from pydantic import BaseModel

from .conflicts import ConflictResolver
from .ical_service import ICalService, verify_export_token
from .models import ConflictResolution

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["iCal"])

ICS_MEDIA_TYPE = "text/calendar; charset=utf-8"


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_ical_service(request: Request) -> ICalService:
    return request.app.state.ical_service


def get_resolver(request: Request) -> ConflictResolver:
    return request.app.state.conflict_resolver


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ResolveConflictRequest(BaseModel):
    key: str
    resolution: ConflictResolution


# =============================================================================
# EXPORT
# =============================================================================

async def _export(
    service: ICalService,
    property_id: str,
    room_id: Optional[str],
    token: Optional[str],
    start: Optional[date],
    end: Optional[date]
) -> Response:
    if not verify_export_token(token, property_id, room_id):
        logger.warning("Rejected iCal export", property_id=property_id, room_id=room_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Calendar not found"
        )

    content = await service.export_feed(property_id, room_id, start, end)
    filename = f"{property_id}-{room_id}.ics" if room_id else f"{property_id}.ics"
    return Response(
        content=content,
        media_type=ICS_MEDIA_TYPE,
        headers={"Content-Disposition": f'inline; filename="{filename}"'}
    )


@router.get("/api/ical/export/property/{property_id}.ics")
async def export_property_calendar(
    property_id: str,
    token: Optional[str] = Query(None),
    start: Optional[date] = Query(None, description="Window start (YYYY-MM-DD)"),
    end: Optional[date] = Query(None, description="Window end (YYYY-MM-DD)"),
    service: ICalService = Depends(get_ical_service),
) -> Response:
    """Calendar of all bookings of a property."""
    return await _export(service, property_id, None, token, start, end)


@router.get("/api/ical/export/property/{property_id}/room/{room_id}.ics")
async def export_room_calendar(
    property_id: str,
    room_id: str,
    token: Optional[str] = Query(None),
    start: Optional[date] = Query(None, description="Window start (YYYY-MM-DD)"),
    end: Optional[date] = Query(None, description="Window end (YYYY-MM-DD)"),
    service: ICalService = Depends(get_ical_service),
) -> Response:
    """Calendar of one room, including property-wide blocks."""
    return await _export(service, property_id, room_id, token, start, end)


# =============================================================================
# CONFLICTS
# =============================================================================

@router.get("/api/conflicts")
async def list_conflicts(
    property_id: Optional[str] = Query(None, alias="propertyId"),
    resolver: ConflictResolver = Depends(get_resolver),
):
    """Unresolved booking conflicts from every source."""
    return {"conflicts": [c.to_json_dict() for c in resolver.pending(property_id)]}


@router.post("/api/conflicts/resolve")
async def resolve_conflict(
    body: ResolveConflictRequest,
    resolver: ConflictResolver = Depends(get_resolver),
):
    resolved = await resolver.resolve(body.key, body.resolution)
    if not resolved:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conflict not found"
        )
    return {"success": True, "key": body.key, "resolution": body.resolution.value}
