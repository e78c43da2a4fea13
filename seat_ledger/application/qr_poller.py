# seat_ledger/application/qr_poller.py

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from seat_ledger.infrastructure.db.session import get_db_session
from seat_ledger.infrastructure.repositories.qr_repository import QRPaymentRepository


logger = logging.getLogger(__name__)

QR_POLL_INTERVAL_SECONDS = float(os.getenv("QR_POLL_INTERVAL_SECONDS", "3"))

StatusFetcher = Callable[[], Awaitable[Optional[Dict[str, Any]]]]


def local_qr_status(session_factory: Optional[sessionmaker] = None) -> StatusFetcher:
    """Status fetcher reading the QR record from the database in a worker thread."""

    def read() -> Optional[Dict[str, Any]]:
        with get_db_session(session_factory) as db:
            record = QRPaymentRepository(db).get()
            if record is None:
                return None
            return {"id": record.id, "status": record.status, "data": dict(record.data or {})}

    async def fetch() -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(read)

    return fetch


class QRPaymentPoller:
    """
    Polls the QR gateway at a fixed interval until the pending transfer
    for the current amount succeeds.

    A success for a different amount is ignored: the cashier changed the
    total after the code was shown, so that transfer does not settle this
    payment. Changing the amount restarts polling; closing the dialog
    calls stop().
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        on_success: Callable[[Dict[str, Any]], None],
        interval: float = QR_POLL_INTERVAL_SECONDS,
    ):
        self.fetch_status = fetch_status
        self.on_success = on_success
        self.interval = interval
        self.amount: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, amount: int) -> asyncio.Task:
        self.stop()
        self.amount = amount
        self._task = asyncio.get_running_loop().create_task(self._poll(amount))
        return self._task

    def update_amount(self, amount: int) -> None:
        if amount == self.amount and self.running:
            return
        logger.info("QR amount changed from %s to %s, restarting poll", self.amount, amount)
        self.start(amount)

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _poll(self, amount: int) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    record = await self.fetch_status()
                except Exception:
                    logger.exception("QR status check failed")
                    continue
                if record is None or record.get("status") != "success":
                    continue
                data = record.get("data") or {}
                if data.get("amount") != amount:
                    logger.debug("Ignoring QR success for amount %s, expecting %s", data.get("amount"), amount)
                    continue
                logger.info("QR payment of %s confirmed", amount)
                self.on_success(record)
                return
        except asyncio.CancelledError:
            logger.debug("QR polling for %s cancelled", amount)
            raise
