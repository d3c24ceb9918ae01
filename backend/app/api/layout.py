from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response
from pydantic import BaseModel

router = APIRouter(prefix="/api/layout", tags=["layout"])


class PositionOut(BaseModel):
    sensor_key: str
    site_id: int
    channel_id: str
    x: float
    y: float
    display_name: str
    detector_type: int
    status: int
    status_text: str
    is_online: bool


class LayoutOut(BaseModel):
    site_id: int
    layout_type: str
    columns: int | None
    rows: int | None
    positions: list[PositionOut]


@router.get("/{site_id}", response_model=LayoutOut)
async def site_layout(
    site_id: int,
    request: Request,
    columns: Optional[int] = Query(None, ge=1, le=50, description="Force a grid with N columns"),
):
    layout = await request.app.state.layout_service.site_layout(site_id, columns)
    return LayoutOut(
        site_id=layout.site_id,
        layout_type=layout.layout_type,
        columns=layout.columns,
        rows=layout.rows,
        positions=[PositionOut(**vars(p)) for p in layout.positions],
    )


@router.get("/{site_id}/svg", response_class=Response)
async def site_diagram(site_id: int, request: Request):
    content = request.app.state.layout_service.svg_content(site_id)
    if content is None:
        raise HTTPException(404, "SVG layout not found")
    return Response(content=content, media_type="image/svg+xml")
