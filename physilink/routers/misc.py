from fastapi import APIRouter, Depends

from physilink.routers.sessions import get_client, get_store
from physilink.services.analysis_client import AnalysisClient
from physilink.services.session_store import SessionStore

router = APIRouter(tags=["Misc"])


@router.get("/health")
def health(s: SessionStore = Depends(get_store), c: AnalysisClient = Depends(get_client)):
    return {
        "status": "ok",
        "provider_configured": c.ready(),
        "sessions": len(s.sessions()),
    }
