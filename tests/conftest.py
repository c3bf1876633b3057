import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base, get_db, settings
from main import app
from models import Tier
from core.lobby_manager import LobbyManager
from core.wallet_ledger import WalletLedger


@pytest.fixture(autouse=True)
def lobby_settings(monkeypatch):
    monkeypatch.setattr(settings, "countdown_seconds", 3)
    monkeypatch.setattr(settings, "default_queue_size", 20)
    monkeypatch.setattr(settings, "settlement_max_attempts", 3)
    monkeypatch.setattr(settings, "settlement_retry_backoff_seconds", 0)
    monkeypatch.setattr(settings, "lobby_expiry_policy", "none")
    monkeypatch.setattr(settings, "internal_api_token", None)
    return settings


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'lucky_lobby_test.db'}",
        connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def fund(db):
    """給使用者加票"""
    def _fund(user_id, tier=Tier.BRONZE, amount=1):
        return WalletLedger.credit(db, user_id, tier, amount, "TEST_FUNDING")
    return _fund


@pytest.fixture
def fill_lobby(db, fund):
    """
    依序讓 count 位玩家加入同一個大廳，user-i 選號碼 i（numbers=False 時不選號碼）

    返回最後一次加入的 LobbyView
    """
    def _fill(count, tier=Tier.BRONZE, queue_size=20, prefix="user", numbers=True):
        view = None
        for i in range(count):
            user_id = f"{prefix}-{i}"
            fund(user_id, tier, 1)
            view = LobbyManager.join_lobby(
                db, tier, user_id,
                lucky_number=i if numbers else None,
                queue_size=queue_size
            )
        return view
    return _fill
