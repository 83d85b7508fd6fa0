from __future__ import annotations

import argparse
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from .config import get_settings
from .engine import ReminderEngine, build_engine
from .models import DispatchRunResponse, OwnerSyncSummary

logger = logging.getLogger(__name__)


class ReminderWorker:
    """Runs dispatch and sync on their own intervals from a single loop.

    Sync only covers the owners passed in; dispatch picks up every owner with due reminders.
    """

    def __init__(
        self,
        engine: ReminderEngine,
        *,
        owner_ids: list[str],
        sync_interval_seconds: int,
        dispatch_interval_seconds: int,
    ) -> None:
        self._engine = engine
        self._owner_ids = list(owner_ids)
        self._sync_interval = timedelta(seconds=sync_interval_seconds)
        self._dispatch_interval = timedelta(seconds=dispatch_interval_seconds)
        self._last_sync_at: datetime | None = None
        self._last_dispatch_at: datetime | None = None

    def tick(self, now: datetime | None = None) -> tuple[list[OwnerSyncSummary] | None, DispatchRunResponse | None]:
        current_time = now or datetime.now(timezone.utc)
        sync_result: list[OwnerSyncSummary] | None = None
        dispatch_result: DispatchRunResponse | None = None

        if self._owner_ids and (
            self._last_sync_at is None or current_time - self._last_sync_at >= self._sync_interval
        ):
            sync_result = self._engine.sync_orchestrator().sync_owners(self._owner_ids, now=current_time)
            self._last_sync_at = current_time

        if self._last_dispatch_at is None or current_time - self._last_dispatch_at >= self._dispatch_interval:
            dispatch_result = self._engine.dispatcher().run(now=current_time)
            self._last_dispatch_at = current_time

        return sync_result, dispatch_result

    def run_forever(
        self,
        *,
        poll_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        max_ticks: int | None = None,
    ) -> None:
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            try:
                self.tick()
            except Exception:
                logger.exception("reminder worker tick failed")
            ticks += 1
            sleep(poll_seconds)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the reminder sync and dispatch loop.")
    parser.add_argument(
        "--owner",
        dest="owner_ids",
        action="append",
        default=[],
        help="Owner id to sync. Repeat flag for multiple owners.",
    )
    parser.add_argument("--poll-seconds", type=float, default=10.0)
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = get_settings()
    worker = ReminderWorker(
        build_engine(settings),
        owner_ids=args.owner_ids,
        sync_interval_seconds=settings.sync_interval_seconds,
        dispatch_interval_seconds=settings.dispatch_interval_seconds,
    )
    if args.once:
        worker.tick()
        return 0
    worker.run_forever(poll_seconds=args.poll_seconds)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
