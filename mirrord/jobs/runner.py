from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from mirrord.content.addresser import Comparison, ContentAddresser
from mirrord.content.types import ContentItem
from mirrord.core.errors import (
    JobLockedError,
    ListingError,
    RetryExhaustedError,
    TransferError,
    UnsafePlanError,
    error_code,
)
from mirrord.db.models import RunStatus, RunTrigger
from mirrord.jobs.lock_service import JobLockService, job_lock_key
from mirrord.jobs.types import (
    DeleteMode,
    JobRunReport,
    MirrorJob,
    TransferAction,
    TransferOutcome,
    TransferResult,
)
from mirrord.planning.planner import TransferPlan, plan
from mirrord.transfer.executor import TransferExecutor
from mirrord.transfer.retry import RetryPolicy

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class JobRunner:
    """Executes one run of a mirror job: list, plan, transfer, delete, report.

    Exactly one report comes out of ``run``. Listing and planning failures
    produce a ``failed`` report; per-item failures are recorded in the report
    and never abort the run. Setting ``cancel_event`` stops dispatching new
    items; items already in flight finish.
    """

    def __init__(
        self,
        job: MirrorJob,
        addresser: ContentAddresser,
        *,
        lock_service: JobLockService | None = None,
        heartbeat_seconds: float = 30.0,
        sleep: Callable[[float], None] | None = None,
    ):
        self.job = job
        self._addresser = addresser
        self._lock_service = lock_service
        self._heartbeat_seconds = heartbeat_seconds
        self._sleep = sleep

    def _retry_policy(self, cancel_event: threading.Event) -> RetryPolicy:
        sleep = self._sleep or cancel_event.wait
        return RetryPolicy.from_settings(self.job.retry, sleep=sleep)

    def _compare(self, source_item: ContentItem, dest_item: ContentItem) -> Comparison:
        try:
            return self._addresser.compare(source_item, self.job.source, dest_item, self.job.destination)
        except (TransferError, OSError) as exc:
            logger.warning(
                "Could not compare %s (%s); scheduling it for transfer",
                source_item.key,
                exc,
                extra={"job": self.job.name, "key": source_item.key},
            )
            return Comparison(equivalent=False, source=source_item)

    def _list(self, retry: RetryPolicy) -> tuple[list[ContentItem], list[ContentItem]]:
        def on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            logger.warning(
                "Listing failed on attempt %d (%s); retrying in %.2fs",
                attempt,
                exc,
                delay,
                extra={"job": self.job.name, "attempt": attempt},
            )

        source_items = retry.execute(self.job.source.list, on_retry=on_retry)
        dest_items = retry.execute(self.job.destination.list, on_retry=on_retry)
        return source_items, dest_items

    def build_plan(self, cancel_event: threading.Event | None = None) -> TransferPlan:
        retry = self._retry_policy(cancel_event or threading.Event())
        source_items, dest_items = self._list(retry)
        for endpoint, items in ((self.job.source, source_items), (self.job.destination, dest_items)):
            dropped = self._addresser.prune(endpoint, {item.key for item in items})
            if dropped:
                logger.debug("Pruned %d cached fingerprints of %s", dropped, endpoint.endpoint_id)
        return plan(
            source_items,
            dest_items,
            self.job.deletion,
            compare=self._compare,
            allow_empty_source=self.job.allow_empty_source,
        )

    def run(
        self,
        *,
        trigger: RunTrigger = RunTrigger.MANUAL,
        cancel_event: threading.Event | None = None,
        run_id: str | None = None,
    ) -> JobRunReport:
        run_id = run_id or str(uuid4())
        cancel_event = cancel_event or threading.Event()
        lock_key = job_lock_key(self.job.name)
        if self._lock_service is not None and not self._lock_service.acquire(lock_key, run_id):
            raise JobLockedError(f"Job {self.job.name} is already running in another process")

        started_at = _now()
        log_extra = {"job": self.job.name, "run_id": run_id, "trigger": trigger.value}
        logger.info("Starting run %s of %s (%s)", run_id, self.job.name, trigger.value, extra=log_extra)
        try:
            return self._run(run_id, trigger, cancel_event, started_at)
        finally:
            if self._lock_service is not None:
                self._lock_service.release(lock_key, run_id)

    def _run(
        self,
        run_id: str,
        trigger: RunTrigger,
        cancel_event: threading.Event,
        started_at: datetime,
    ) -> JobRunReport:
        report = JobRunReport(
            run_id=run_id,
            job_name=self.job.name,
            trigger=trigger,
            status=RunStatus.FAILED,
            started_at=started_at,
            finished_at=started_at,
        )

        recovered = self.job.destination.recover()
        if recovered:
            logger.info("Discarded %d interrupted staging objects", recovered, extra={"job": self.job.name})

        try:
            transfer_plan = self.build_plan(cancel_event)
        except (ListingError, UnsafePlanError, RetryExhaustedError) as exc:
            cause = exc.last_error if isinstance(exc, RetryExhaustedError) else exc
            logger.error(
                "Run %s of %s failed while planning: %s",
                run_id,
                self.job.name,
                cause,
                extra={"job": self.job.name, "run_id": run_id},
            )
            report.error_code = error_code(exc)
            report.error_message = str(cause)
            report.finished_at = _now()
            return report

        report.planned = transfer_plan.planned_count
        report.noop = transfer_plan.noop_count

        retry = self._retry_policy(cancel_event)
        executor = TransferExecutor(self._addresser, retry, job_name=self.job.name)
        heartbeat = _Heartbeat(self._lock_service, job_lock_key(self.job.name), run_id, self._heartbeat_seconds)

        report.results.extend(self._run_transfers(transfer_plan, executor, cancel_event, heartbeat))
        report.results.extend(self._run_deletes(transfer_plan, report.results, executor, cancel_event, heartbeat))

        if heartbeat.lost:
            report.error_code = "LEASE_LOST"
            report.error_message = "Job lease was lost during the run"
        if cancel_event.is_set():
            report.status = RunStatus.CANCELLED
        elif report.failed or report.skipped:
            report.status = RunStatus.COMPLETED_WITH_ERRORS
        else:
            report.status = RunStatus.COMPLETED
        report.finished_at = _now()
        return report

    def _run_transfers(
        self,
        transfer_plan: TransferPlan,
        executor: TransferExecutor,
        cancel_event: threading.Event,
        heartbeat: "_Heartbeat",
    ) -> list[TransferResult]:
        work = [(item, TransferAction.ADD) for item in transfer_plan.to_add]
        work.extend((item, TransferAction.UPDATE) for item in transfer_plan.to_update)
        if not work:
            return []

        def run_one(item: ContentItem, action: TransferAction) -> TransferResult | None:
            if cancel_event.is_set():
                return None
            try:
                return executor.transfer(item, self.job.source, self.job.destination, action=action)
            finally:
                if not heartbeat.beat():
                    cancel_event.set()

        results: list[TransferResult] = []
        with ThreadPoolExecutor(
            max_workers=self.job.concurrency,
            thread_name_prefix=f"mirror-{self.job.name}",
        ) as pool:
            futures: list[tuple[ContentItem, TransferAction, Future[TransferResult | None]]] = [
                (item, action, pool.submit(run_one, item, action)) for item, action in work
            ]
            for item, action, future in futures:
                try:
                    result = future.result()
                except Exception as exc:
                    logger.exception(
                        "Unexpected error while transferring %s",
                        item.key,
                        extra={"job": self.job.name, "key": item.key},
                    )
                    result = TransferResult(
                        key=item.key,
                        action=action,
                        outcome=TransferOutcome.FAILED_FATAL,
                        error_code=error_code(exc),
                        error_message=str(exc),
                    )
                if result is not None:
                    results.append(result)
        return results

    def _run_deletes(
        self,
        transfer_plan: TransferPlan,
        transfer_results: list[TransferResult],
        executor: TransferExecutor,
        cancel_event: threading.Event,
        heartbeat: "_Heartbeat",
    ) -> list[TransferResult]:
        if not transfer_plan.to_delete:
            return []

        transactional = self.job.delete_mode == DeleteMode.TRANSACTIONAL
        if transactional and any(not result.succeeded for result in transfer_results):
            logger.warning(
                "Holding back %d deletions because not every transfer succeeded",
                len(transfer_plan.to_delete),
                extra={"job": self.job.name},
            )
            return [
                _skipped(item, "DELETE_DEFERRED", "Deletion held back because a transfer in this run failed")
                for item in transfer_plan.to_delete
            ]

        results: list[TransferResult] = []
        for index, item in enumerate(transfer_plan.to_delete):
            if cancel_event.is_set():
                break
            result = executor.delete(item, self.job.destination)
            results.append(result)
            if not heartbeat.beat():
                cancel_event.set()
            if transactional and not result.succeeded:
                results.extend(
                    _skipped(rest, "DELETE_ABORTED", f"Deletion stopped after {item.key} failed")
                    for rest in transfer_plan.to_delete[index + 1 :]
                )
                break
        return results


def _skipped(item: ContentItem, code: str, message: str) -> TransferResult:
    return TransferResult(
        key=item.key,
        action=TransferAction.DELETE,
        outcome=TransferOutcome.SKIPPED,
        error_code=code,
        error_message=message,
    )


class _Heartbeat:
    def __init__(self, lock_service: JobLockService | None, lock_key: str, run_id: str, interval: float):
        self._lock_service = lock_service
        self._lock_key = lock_key
        self._run_id = run_id
        self._interval = interval
        self._last = time.monotonic()
        self._guard = threading.Lock()
        self.lost = False

    def beat(self) -> bool:
        if self._lock_service is None:
            return True
        with self._guard:
            if self.lost:
                return False
            now = time.monotonic()
            if now - self._last < self._interval:
                return True
            self._last = now
            if not self._lock_service.refresh(self._lock_key, self._run_id):
                logger.error("Lost the lease for %s; stopping the run", self._lock_key)
                self.lost = True
                return False
            return True
