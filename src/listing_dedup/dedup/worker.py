"""Queue-fed pool of stateless dedup workers."""

import asyncio
from dataclasses import dataclass

from listing_dedup.db.repository import DedupRepository
from listing_dedup.dedup.service import DeduplicationService, ProcessOutcome
from listing_dedup.errors import PreconditionFailedError
from listing_dedup.logging import get_logger

logger = get_logger(__name__)


@dataclass
class BatchResult:
    """Counters for one batch run."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.processed + self.skipped + self.failed


class DedupWorkerPool:
    """Process pending listings with a fixed number of concurrent workers.

    Workers share nothing but the queue; ordering is not guaranteed and every
    state change relies on the storage layer's conditional updates.
    """

    def __init__(
        self,
        service: DeduplicationService,
        repository: DedupRepository,
        *,
        concurrency: int = 4,
        batch_size: int = 100,
    ) -> None:
        self._service = service
        self._repository = repository
        self._concurrency = max(1, concurrency)
        self._batch_size = batch_size

    async def run_batch(self, listing_ids: list[int] | None = None) -> BatchResult:
        """Process one batch of listings.

        Args:
            listing_ids: Explicit listings to process. Defaults to the oldest
                ``batch_size`` pending listings.

        Returns:
            BatchResult with processed/skipped/failed counts.
        """
        if listing_ids is None:
            listing_ids = await self._repository.get_pending_listing_ids(self._batch_size)
        result = BatchResult()
        if not listing_ids:
            logger.debug("dedup_batch_empty")
            return result

        queue: asyncio.Queue[int] = asyncio.Queue()
        for listing_id in listing_ids:
            queue.put_nowait(listing_id)

        workers = [
            asyncio.create_task(self._worker(queue, result), name=f"dedup-worker-{i}")
            for i in range(min(self._concurrency, len(listing_ids)))
        ]
        await queue.join()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        logger.info(
            "dedup_batch_complete",
            processed=result.processed,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    async def _worker(self, queue: "asyncio.Queue[int]", result: BatchResult) -> None:
        while True:
            listing_id = await queue.get()
            try:
                outcome = await self._service.process_listing(listing_id)
                if outcome.outcome == ProcessOutcome.SKIPPED:
                    result.skipped += 1
                else:
                    result.processed += 1
            except PreconditionFailedError as e:
                logger.debug("dedup_listing_skipped", listing_id=listing_id, reason=str(e))
                result.skipped += 1
            except Exception:
                logger.error("dedup_listing_failed", listing_id=listing_id, exc_info=True)
                result.failed += 1
            finally:
                queue.task_done()

    async def run_forever(self, interval_seconds: float) -> None:
        """Run batches until cancelled.

        Only a full batch of successfully processed listings is followed
        straight away by the next one; anything short of that, failures
        included, waits ``interval_seconds`` first.
        """
        logger.info(
            "dedup_worker_pool_started",
            concurrency=self._concurrency,
            batch_size=self._batch_size,
            interval_seconds=interval_seconds,
        )
        while True:
            try:
                result = await self.run_batch()
            except Exception:
                logger.error("dedup_batch_error", exc_info=True)
                result = BatchResult()
            if result.processed < self._batch_size:
                await asyncio.sleep(interval_seconds)
