import asyncio
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import psutil

from ._checksum import ChecksumEngine
from ._utils import logger, elapsed_ms, format_bytes, resolve_path, utc_now, PathLike
from .backup.manager import BackupManager
from .config import LargeProjectConfig
from .errors import IntegrityError, ValidationError
from .models import (
    BatchResult,
    BatchTiming,
    ChecksumRecord,
    FileOperationResult,
    ProgressEvent,
    SystemMetrics,
)

OPERATIONS = ("checksum", "backup", "validate")

ErrorHandler = Callable[[str, BaseException], bool]
ProgressListener = Callable[[ProgressEvent], None]


@dataclass
class BatchOptions:
    """Per-run overrides for ``process_large_project``.

    ``error_handler`` receives the failing path and exception; returning
    ``False`` stops the run and the remaining files are reported as skipped.
    """

    strategy: Optional[str] = None
    error_handler: Optional[ErrorHandler] = None
    expected_checksums: Dict[str, Any] = field(default_factory=dict)


class LargeProjectOptimizer:
    def __init__(self, config: LargeProjectConfig, checksums: ChecksumEngine, backups: BackupManager):
        self.config = config
        self.checksums = checksums
        self.backups = backups
        self._listeners: List[ProgressListener] = []
        self._process = psutil.Process(os.getpid())
        self._stats = {
            "runs": 0,
            "aborted_runs": 0,
            "files_processed": 0,
            "files_failed": 0,
            "files_skipped": 0,
            "batches": 0,
            "batch_size_increases": 0,
            "batch_size_decreases": 0,
            "total_batch_ms": 0.0,
            "peak_memory_mb": 0.0,
        }
        self._current_batch_size = config.initial_batch_size
        self._last_metrics: Optional[SystemMetrics] = None

    def on_progress(self, listener: ProgressListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def off_progress(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def process_large_project(
        self,
        paths: Sequence[PathLike],
        operation: str,
        options: Optional[BatchOptions] = None,
    ) -> BatchResult:
        """Run ``operation`` over many files in resource-aware batches.

        Args:
            paths: Files to process, in order
            operation: One of ``checksum``, ``backup`` or ``validate``
            options: Strategy override, error handler and expected checksums

        Returns:
            BatchResult with one FileOperationResult per processed file
        """
        if operation not in OPERATIONS:
            raise ValidationError(f"Unknown batch operation {operation!r}; expected one of {OPERATIONS}")
        options = options or BatchOptions()
        strategy = options.strategy or self.config.strategy
        if strategy not in ("sequential", "parallel", "adaptive"):
            raise ValidationError(f"Unknown batch strategy {strategy!r}")

        files = [str(p) for p in paths]
        total = len(files)
        start = time.perf_counter()
        batch_size = self.config.initial_batch_size
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        results: List[FileOperationResult] = []
        timings: List[BatchTiming] = []
        memory_samples: List[float] = []
        aborted = False
        position = 0
        last_emit: Optional[float] = None

        logger.info(f"Processing {total} files ({operation}, {strategy} strategy)")

        while position < total and not aborted:
            metrics = await self._sample_metrics()
            memory_samples.append(metrics.rss_mb)
            if strategy == "adaptive" and timings:
                batch_size = self._resize(batch_size, metrics)

            batch = files[position:position + batch_size]
            batch_start = time.perf_counter()

            if strategy == "sequential":
                for file_path in batch:
                    result = await self._run_one(file_path, operation, options)
                    results.append(result)
                    position += 1
                    if not result.success and not self._should_continue(file_path, result, options):
                        aborted = True
                        break
            else:
                batch_results = await asyncio.gather(
                    *[self._guarded(semaphore, file_path, operation, options) for file_path in batch]
                )
                results.extend(batch_results)
                position += len(batch)
                for file_path, result in zip(batch, batch_results):
                    if not result.success and not self._should_continue(file_path, result, options):
                        aborted = True
                        break

            timings.append(
                BatchTiming(
                    index=len(timings),
                    size=len(batch),
                    duration_ms=elapsed_ms(batch_start),
                    strategy=strategy,
                    metrics=metrics,
                )
            )

            now = time.monotonic()
            due = last_emit is None or now - last_emit >= self.config.progress_interval
            if due and position < total and not aborted:
                self._emit(len(results), total, start, batch_size)
                last_emit = now

        self._emit(len(results), total, start, batch_size)

        skipped_paths = files[position:]
        successful = sum(1 for r in results if r.success)
        result = BatchResult(
            operation=operation,
            total=total,
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
            skipped=len(skipped_paths),
            skipped_paths=skipped_paths,
            results=results,
            batch_timings=timings,
            peak_memory_mb=max(memory_samples, default=0.0),
            average_memory_mb=round(sum(memory_samples) / len(memory_samples), 3) if memory_samples else 0.0,
            final_batch_size=batch_size,
            duration_ms=elapsed_ms(start),
            aborted=aborted,
        )
        self._record(result)

        if aborted:
            logger.warning(f"Batch {operation} aborted after {result.processed}/{total} files")
        logger.info(
            f"Processed {result.processed}/{total} files in {result.duration_ms:.0f}ms "
            f"({result.failed} failed, {result.skipped} skipped, "
            f"peak RSS {format_bytes(int(result.peak_memory_mb * 1024 * 1024))})"
        )
        return result

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self._stats)
        stats["average_batch_ms"] = round(stats["total_batch_ms"] / stats["batches"], 3) if stats["batches"] else 0.0
        stats["current_batch_size"] = self._current_batch_size
        stats["strategy"] = self.config.strategy
        stats["last_metrics"] = self._last_metrics.model_dump(mode="json") if self._last_metrics else None
        return stats

    async def _guarded(self, semaphore, file_path, operation, options) -> FileOperationResult:
        async with semaphore:
            return await self._run_one(file_path, operation, options)

    async def _run_one(self, file_path: str, operation: str, options: BatchOptions) -> FileOperationResult:
        start = time.perf_counter()
        try:
            if operation == "checksum":
                record = await self.checksums.compute_checksum(file_path)
                return FileOperationResult(
                    file_path=file_path, success=True, value=record, duration_ms=elapsed_ms(start)
                )
            if operation == "backup":
                record = await self.backups.create_backup(file_path)
                return FileOperationResult(
                    file_path=file_path, success=True, value=record, duration_ms=elapsed_ms(start)
                )
            return await self._validate_one(file_path, options, start)
        except IntegrityError as e:
            logger.debug(f"Batch {operation} failed for {file_path}: {e}")
            return FileOperationResult(
                file_path=file_path, success=False, error=str(e), duration_ms=elapsed_ms(start)
            )

    async def _validate_one(self, file_path: str, options: BatchOptions, start: float) -> FileOperationResult:
        expected = options.expected_checksums.get(file_path)
        if expected is None:
            expected = options.expected_checksums.get(str(resolve_path(file_path)))

        if expected is not None:
            outcome = await self.checksums.validate_file(file_path, expected)
            return FileOperationResult(
                file_path=file_path,
                success=outcome.is_valid,
                value=outcome,
                error=outcome.error or (None if outcome.is_valid else "Checksum mismatch"),
                duration_ms=elapsed_ms(start),
            )

        access = self.checksums.verify_file_access(file_path)
        if not access.exists or not access.readable:
            return FileOperationResult(
                file_path=file_path,
                success=False,
                value=access,
                error=access.error or "File not accessible",
                duration_ms=elapsed_ms(start),
            )
        record: ChecksumRecord = await self.checksums.compute_checksum(file_path)
        return FileOperationResult(file_path=file_path, success=True, value=record, duration_ms=elapsed_ms(start))

    def _should_continue(self, file_path: str, result: FileOperationResult, options: BatchOptions) -> bool:
        if options.error_handler is None:
            return True
        error = IntegrityError(result.error or "Operation failed", file_path=file_path, operation="batch")
        try:
            return bool(options.error_handler(file_path, error))
        except Exception as e:
            logger.error(f"Batch error handler raised for {file_path}: {e}; aborting")
            return False

    def _resize(self, batch_size: int, metrics: SystemMetrics) -> int:
        if not self.config.dynamic_sizing:
            return batch_size
        ratios = (
            metrics.memory_percent / self.config.memory_threshold_percent,
            metrics.cpu_percent / self.config.cpu_threshold_percent,
            metrics.event_loop_lag_ms / self.config.event_loop_lag_threshold_ms,
        )
        new_size = batch_size
        if any(r > 1.0 for r in ratios):
            new_size = max(self.config.min_batch_size, batch_size // 2)
        elif all(r < 0.5 for r in ratios):
            new_size = min(self.config.max_batch_size, int(batch_size * 1.5))

        if new_size > batch_size:
            self._stats["batch_size_increases"] += 1
        elif new_size < batch_size:
            self._stats["batch_size_decreases"] += 1
            logger.debug(
                f"Reducing batch size {batch_size} -> {new_size} "
                f"(memory {metrics.memory_percent:.1f}%, cpu {metrics.cpu_percent:.1f}%, "
                f"lag {metrics.event_loop_lag_ms:.1f}ms)"
            )
        return new_size

    async def _sample_metrics(self) -> SystemMetrics:
        tick = time.perf_counter()
        await asyncio.sleep(0)
        lag_ms = (time.perf_counter() - tick) * 1000

        metrics = SystemMetrics(
            memory_percent=psutil.virtual_memory().percent,
            rss_mb=round(self._process.memory_info().rss / 1024**2, 3),
            cpu_percent=psutil.cpu_percent(interval=None),
            event_loop_lag_ms=round(lag_ms, 3),
            sampled_at=utc_now(),
        )
        self._last_metrics = metrics
        return metrics

    def _emit(self, processed: int, total: int, start: float, batch_size: int) -> None:
        elapsed = time.perf_counter() - start
        rate = processed / elapsed if elapsed > 0 else 0.0
        event = ProgressEvent(
            processed=processed,
            total=total,
            percentage=round(processed / total * 100, 2) if total else 100.0,
            rate=round(rate, 3),
            eta_seconds=round((total - processed) / rate, 3) if rate > 0 else None,
            batch_size=batch_size,
        )
        for listener in list(self._listeners):
            listener(event)

    def _record(self, result: BatchResult) -> None:
        self._stats["runs"] += 1
        self._stats["aborted_runs"] += int(result.aborted)
        self._stats["files_processed"] += result.processed
        self._stats["files_failed"] += result.failed
        self._stats["files_skipped"] += result.skipped
        self._stats["batches"] += len(result.batch_timings)
        self._stats["total_batch_ms"] += sum(t.duration_ms for t in result.batch_timings)
        self._stats["peak_memory_mb"] = max(self._stats["peak_memory_mb"], result.peak_memory_mb)
        self._current_batch_size = result.final_batch_size
