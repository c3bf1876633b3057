"""
排程器：伺服器端的時間觸發

倒數結束的時間由伺服器決定，不相信客戶端回報的計時。
- interval job：每 sweep_interval_seconds 掃一次到期的大廳（保底機制）
- date job：大廳滿員時，在 countdown_ends_at 安排一次推進

排程器沒啟動時（例如測試），schedule_spin 只記錄，不做任何事。
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from database import SessionLocal

logger = logging.getLogger(__name__)


class LobbyScheduler:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, interval_seconds: int) -> None:
        if self.running:
            return
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_sweep,
            "interval",
            seconds=interval_seconds,
            id="lobby-sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Lobby scheduler started (sweep every {interval_seconds}s)")

    def shutdown(self) -> None:
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Lobby scheduler stopped")
        self._scheduler = None

    def run_sweep(self) -> None:
        from core.round_resolver import RoundResolver  # 避免 circular import

        RoundResolver.sweep(self.session_factory)

    def schedule_spin(self, lobby_id: str, run_at: datetime) -> bool:
        """在 run_at（naive UTC）推進大廳；排程器沒啟動時交給下一次 sweep"""
        if not self.running:
            logger.debug(f"Scheduler not running, lobby {lobby_id} waits for the sweep")
            return False

        self._scheduler.add_job(
            self._advance,
            "date",
            run_date=run_at,
            args=[lobby_id],
            id=f"spin-{lobby_id}",
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.info(f"Scheduled spin for lobby {lobby_id} at {run_at.isoformat()}")
        return True

    def _advance(self, lobby_id: str) -> None:
        from core.round_resolver import RoundResolver

        db = self.session_factory()
        try:
            RoundResolver.advance_lobby(db, lobby_id)
        except Exception as e:
            # sweep 會再試一次
            logger.error(f"Scheduled spin failed for lobby {lobby_id}: {e}", exc_info=True)
        finally:
            db.close()


lobby_scheduler = LobbyScheduler()
