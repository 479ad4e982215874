from fastapi import APIRouter

from physilink.models.schemas import RenderIn, RenderOut
from physilink.services.math_renderer import render, render_html

router = APIRouter(prefix="/api/render", tags=["Render"])


@router.post("", response_model=RenderOut)
def render_text(payload: RenderIn):
    segments = render(payload.text, display_mode=payload.display_mode)
    return RenderOut(segments=segments, html=render_html(segments))
