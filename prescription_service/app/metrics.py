"""
Append-only recorder for named numeric observations (latencies, gas usage).

Samples are buffered in memory and written to the ``metric_samples`` table
once the buffer reaches the flush threshold, on ``read_all`` and on
``close``. A failed write keeps the batch buffered for the next flush, so
recording never fails because the database is unavailable.

The recorder is constructed at startup and closed at shutdown by the app
lifespan; components receive it as a dependency.
"""

import asyncio
import logging
import math
import time
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import repositories as repo

logger = logging.getLogger(__name__)

API_LATENCY_PREFIX = "api_latency:"


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        return None
    return value


class MetricsRecorder:
    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], flush_threshold: int = 20
    ):
        self._session_factory = session_factory
        self._flush_threshold = max(1, flush_threshold)
        self._pending: List[Tuple[str, float, int]] = []
        self._lock = asyncio.Lock()
        self._closed = False

    async def record(self, name: str, value: Any) -> None:
        """Append a sample; values that are not finite numbers are dropped."""
        number = _as_number(value)
        if number is None or not name:
            logger.debug("metric sample dropped", extra={"metric": name})
            return
        async with self._lock:
            self._pending.append((name, number, int(time.time() * 1000)))
            if len(self._pending) >= self._flush_threshold:
                try:
                    await self._flush_locked()
                except SQLAlchemyError as exc:
                    logger.warning(
                        "metric flush failed, samples kept",
                        extra={"pending": len(self._pending), "error": str(exc)},
                    )

    async def flush(self) -> None:
        async with self._lock:
            await self._flush_locked()

    async def _flush_locked(self) -> None:
        if not self._pending:
            return
        batch, self._pending = self._pending, []
        try:
            async with self._session_factory() as session:
                await repo.add_metric_samples(session, batch)
        except SQLAlchemyError:
            self._pending[:0] = batch
            raise

    async def read_all(self) -> Dict[str, List[Dict[str, Any]]]:
        """Return every series keyed by name, samples in recording order."""
        await self.flush()
        async with self._session_factory() as session:
            rows = await repo.list_metric_samples(session)
        series: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            series.setdefault(row.name, []).append(
                {"value": row.value, "timestamp": row.timestamp}
            )
        return series

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.flush()
        except SQLAlchemyError as exc:
            logger.error(
                "metric samples lost at shutdown",
                extra={"pending": len(self._pending), "error": str(exc)},
            )
            return
        logger.info("metrics recorder closed")


def average(samples: List[Dict[str, Any]]) -> Optional[float]:
    if not samples:
        return None
    return sum(s["value"] for s in samples) / len(samples)


def summarize(series: Dict[str, List[Dict[str, Any]]]) -> Dict[str, Optional[float]]:
    """Averages used by the performance report."""
    api_samples = [
        sample
        for name, samples in series.items()
        if name.startswith(API_LATENCY_PREFIX)
        for sample in samples
    ]
    return {
        "draft_creation_ms": average(series.get("draft_creation_ms", [])),
        "finalization_ms": average(series.get("finalization_ms", [])),
        "api_latency_ms": average(api_samples),
        "gas_finalize": average(series.get("gas_finalize", [])),
        "pinata_upload_ms": average(series.get("pinata_upload_ms", [])),
    }
