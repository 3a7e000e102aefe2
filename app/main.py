import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import LOG_LEVEL, SWEEP_SCHEDULER_ENABLED
from .database import create_db_and_tables
from .routers import challenges, devices
from .tasks.challenge_sweep import sweep_forever

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/")
async def root():
    return {"message": "Hello World"}

app.include_router(challenges.router)
app.include_router(devices.router)

@app.on_event("startup")
async def on_startup():
    create_db_and_tables()
    if SWEEP_SCHEDULER_ENABLED:
        logger.info("Starting the challenge sweep scheduler")
        app.state.sweep_task = asyncio.create_task(sweep_forever())
