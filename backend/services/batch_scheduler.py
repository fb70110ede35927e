"""
Batch Scheduler - sequential multi-symbol skew runs
===================================================

The live feed is one shared resource, so a batch is a queue consumer: each
symbol runs the full pipeline under feed.session() and the next symbol is
dispatched only after the previous one has torn its subscriptions down.

STATES (per batch):
    Idle -> Dispatching(i) -> CacheHit | Pipeline(chain -> phase1 -> phase2 -> done)
         -> Dispatching(i+1) -> ... -> Completed
    Aborted when the client goes away

RULES:
- One symbol's failure is recorded in errors[symbol]; the batch continues
- Missing credentials fail the whole batch before anything is dispatched
- Liveness is checked before each dispatch and before each emission. A running
  phase is not interrupted; its emissions are just suppressed
- Progress and the final results keep request order
- Nothing is retried
"""

import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from models.schemas import BatchEvent, BatchProgress, BatchSummary, SkewResult
from services.skew_errors import AuthMissingCredentials
from utils.symbol_normalization import normalize_symbols

logger = logging.getLogger(__name__)

LivenessCheck = Callable[[], Awaitable[bool]]


async def _always_alive() -> bool:
    return True


@dataclass
class BatchJob:
    """State of one batch run."""
    run_id: str
    symbols: List[str]
    results: Dict[str, SkewResult] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    aborted: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    def summary(self) -> BatchSummary:
        return BatchSummary(
            total=len(self.symbols),
            successful=len(self.results),
            failed=len(self.errors),
            aborted=self.aborted,
        )

    def ordered_results(self) -> Dict[str, SkewResult]:
        return {s: self.results[s] for s in self.symbols if s in self.results}

    def ordered_errors(self) -> Dict[str, str]:
        return {s: self.errors[s] for s in self.symbols if s in self.errors}

    def log_summary(self):
        self.completed_at = datetime.now(timezone.utc)
        duration = (self.completed_at - self.started_at).total_seconds()
        summary = self.summary()
        logger.info(
            f"BATCH_STATS | run_id={self.run_id} | total={summary.total} | "
            f"success={summary.successful} | failed={summary.failed} | "
            f"aborted={summary.aborted} | duration={duration:.1f}s"
        )
        if self.errors:
            preview = list(self.ordered_errors().items())[:5]
            logger.warning(f"BATCH_FAILURES | run_id={self.run_id} | failed_symbols (first 5): {preview}")


class BatchScheduler:
    def __init__(self, pipeline):
        self.pipeline = pipeline

    async def run(
        self,
        symbols: List[str],
        is_alive: Optional[LivenessCheck] = None,
        run_id: Optional[str] = None,
    ) -> AsyncIterator[BatchEvent]:
        alive = is_alive or _always_alive
        job = BatchJob(
            run_id=run_id or f"batch_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}",
            symbols=normalize_symbols(symbols),
        )
        logger.info(f"BATCH_START | run_id={job.run_id} | symbols={len(job.symbols)}")

        yield BatchEvent(type="connected", message=f"Starting batch of {len(job.symbols)} symbols")

        try:
            await self.pipeline.venue.authenticate()
        except AuthMissingCredentials as e:
            logger.error(f"BATCH_ABORTED | run_id={job.run_id} | {e.message}")
            yield BatchEvent(type="error", message=e.message)
            return

        for symbol in job.symbols:
            if not await alive():
                job.aborted = True
                break
            yield BatchEvent(type="progress", progress=BatchProgress(symbol=symbol, status="pending"))

        for symbol in job.symbols:
            if job.aborted or not await alive():
                job.aborted = True
                break

            async with aclosing(self._dispatch(job, symbol)) as updates:
                async for progress in updates:
                    if job.aborted or not await alive():
                        # the running phase finishes; only its emissions stop
                        job.aborted = True
                        continue
                    yield BatchEvent(type="progress", progress=progress)

        if job.aborted:
            logger.warning(f"BATCH_ABORTED | run_id={job.run_id} | client disconnected")

        job.log_summary()
        yield BatchEvent(
            type="complete",
            summary=job.summary(),
            results=job.ordered_results(),
            errors=job.ordered_errors(),
        )

    async def _dispatch(self, job: BatchJob, symbol: str) -> AsyncIterator[BatchProgress]:
        cached = self.pipeline.cache.get(symbol)
        if cached is not None:
            logger.info(f"[Batch] {symbol}: cache hit")
            job.results[symbol] = cached
            yield BatchProgress(symbol=symbol, status="cached")
            yield BatchProgress(symbol=symbol, status="complete", data=cached)
            return

        logger.info(f"[Batch] {symbol}: calculating")
        yield BatchProgress(symbol=symbol, status="calculating")

        async with aclosing(self.pipeline.run(symbol)) as events:
            async for event in events:
                if event.type in ("phase1", "phase2"):
                    yield BatchProgress(symbol=symbol, status=event.type)
                elif event.type == "result":
                    job.results[symbol] = event.data
                    yield BatchProgress(symbol=symbol, status="complete", data=event.data)
                elif event.type == "error":
                    job.errors[symbol] = event.message
                    yield BatchProgress(symbol=symbol, status="error", data={"message": event.message})
