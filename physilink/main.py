from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from physilink.core.config import settings
from physilink.routers import misc, render, sessions


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("physilink")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not sessions.client.ready():
        logger.warning("OPENAI_API_KEY not set; analysis requests will fail")
    yield
    # no illustration request may outlive the client
    await sessions.cancel_background()
    await sessions.client.aclose()


app = FastAPI(title="PhysiLink API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(misc.router)
app.include_router(render.router)
app.include_router(sessions.router)


@app.get("/")
def root():
    return {"message": "PhysiLink API", "env": settings.ENV}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("physilink.main:app", host="0.0.0.0", port=8000, reload=settings.ENV == "development")
