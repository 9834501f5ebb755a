from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from whoisp.api.routes import images, research
from whoisp.config import settings
from whoisp.llm_client import get_model
from whoisp.services import logger as log_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_service.log_event(
        event_type="startup",
        message="WhoisP API started",
        provider=settings.model_provider,
        model=get_model(),
    )
    yield


app = FastAPI(
    title="WhoisP",
    description="Deep research on people and topics powered by grounded Gemini",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)
app.include_router(images.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "whoisp"}
