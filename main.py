from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from database import Base, engine, settings
from api import lobbies, wallet, history
from core.scheduler import lobby_scheduler

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: 建立資料表，啟動倒數 / 結算的排程器
    Base.metadata.create_all(bind=engine)
    if settings.scheduler_enabled:
        lobby_scheduler.start(settings.sweep_interval_seconds)
    yield
    # Shutdown
    lobby_scheduler.shutdown()


app = FastAPI(
    title="Lucky Lobby API",
    description="Tier-based lucky number lobbies with a ticket wallet ledger",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure this properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(lobbies.router)
app.include_router(wallet.router)
app.include_router(history.router)


@app.get("/")
def root():
    return {"message": "Lucky Lobby API", "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
