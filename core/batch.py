"""
Batch certificate generation with bounded concurrency.

A fixed-size worker pool runs each batch item through the generation
function independently. Each item yields its own outcome (a certificate or
a typed failure) at the item's input position, so one bad request never
cancels or corrupts its siblings. The same pool serves the asynchronous
single-certificate path via ``submit``.

Batches accept both request shapes: full ``GenerationRequest`` items or raw
``{placeholder: value}`` maps. Raw maps are bound to the batch template id;
full requests keep their own template id, so an item naming a template the
owner cannot use fails on its own with ACCESS_DENIED.

Timeouts: when the batch deadline passes, items that have not started are
cancelled and reported TIMED_OUT (retriable). Items already running are
abandoned: the generate function receives the batch stop event and discards
its certificate instead of storing it once the event is set. They are
reported TIMED_OUT but not retriable, since one may have been stored just
before the deadline.

Example usage:
    with BatchCoordinator(service.generate, max_workers=50) as coordinator:
        job = coordinator.run(owner_id=1, template_id=7, items=requests, timeout=120)
        print(job.summary())
"""

import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError, as_completed
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from core.errors import BatchValidationError, CertKitError, SigningFailure
from core.logging import get_logger
from core.models import (
    AuditAction,
    AuditEvent,
    BatchItemOutcome,
    BatchItemStatus,
    BatchJob,
    Certificate,
    GenerationRequest,
    utc_now,
)
from core.repositories import AuditSink

logger = get_logger(__name__)

DEFAULT_MAX_WORKERS = 50
MAX_BATCH_SIZE = 1000

# ``(owner_id, request, cancel_event=None) -> Certificate``
GenerateFunc = Callable[..., Certificate]
BatchItem = Union[GenerationRequest, Mapping[str, Optional[str]]]


class BatchHaltedError(CertKitError):
    """Item skipped because an earlier item hit a signing failure."""

    code = "BATCH_HALTED"


class BatchTimeoutError(CertKitError):
    """Item did not complete before the batch deadline."""

    code = "TIMED_OUT"
    retriable = True


class BatchItemAbandonedError(BatchTimeoutError):
    """Item was still running at the batch deadline."""

    retriable = False


def estimate_completion_seconds(count: int, workers: int = DEFAULT_MAX_WORKERS) -> int:
    """Rough completion estimate: one second per wave of ``workers`` certificates."""
    return count // max(workers, 1) + 1


def _coerce_item(template_id: int, item: BatchItem) -> GenerationRequest:
    if isinstance(item, GenerationRequest):
        return item
    if isinstance(item, Mapping):
        return GenerationRequest(template_id=template_id, data=dict(item))
    raise TypeError(f"Unsupported batch item type: {type(item).__name__}")


def _failure(index: int, exc: CertKitError, status: BatchItemStatus = BatchItemStatus.FAILED) -> BatchItemOutcome:
    return BatchItemOutcome(
        index=index,
        status=status,
        error_code=exc.code,
        error_message=exc.message,
        retriable=exc.retriable,
    )


class BatchCoordinator:
    """
    Bounded worker pool for certificate generation.

    Args:
        generate_func: ``(owner_id, request) -> Certificate``; raises CertKitError on failure
        max_workers: Pool size (concurrency ceiling)
        audit_sink: Optional sink for BATCH_COMPLETED events
    """

    def __init__(
        self,
        generate_func: GenerateFunc,
        max_workers: int = DEFAULT_MAX_WORKERS,
        audit_sink: Optional[AuditSink] = None
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._generate_func = generate_func
        self._max_workers = max_workers
        self._audit_sink = audit_sink
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="certkit-worker",
                )
            return self._executor

    def submit(self, owner_id: int, request: GenerationRequest) -> "Future[Certificate]":
        """Queue one generation; the future resolves to the certificate or raises its error."""
        return self._get_executor().submit(self._generate_func, owner_id, request)

    def _run_item(self, owner_id: int, request: GenerationRequest, stop_event: threading.Event,
                  halt_event: threading.Event) -> Certificate:
        if stop_event.is_set():
            raise BatchTimeoutError("Batch deadline passed before item started")
        if halt_event.is_set():
            raise BatchHaltedError("Batch halted after a signing failure")
        try:
            return self._generate_func(owner_id, request, cancel_event=stop_event)
        except SigningFailure:
            halt_event.set()
            raise

    def _outcome_from_future(self, index: int, future: "Future[Certificate]") -> BatchItemOutcome:
        try:
            certificate = future.result()
        except BatchTimeoutError as e:
            return _failure(index, e, BatchItemStatus.TIMED_OUT)
        except CertKitError as e:
            return _failure(index, e)
        except Exception as e:
            logger.error(
                "Unexpected error in batch item",
                extra={"index": index, "error": str(e)},
                exc_info=True,
            )
            return BatchItemOutcome(
                index=index,
                status=BatchItemStatus.FAILED,
                error_code="INTERNAL_ERROR",
                error_message=str(e),
                retriable=False,
            )
        return BatchItemOutcome(index=index, status=BatchItemStatus.SUCCEEDED, certificate=certificate)

    def run(
        self,
        owner_id: int,
        template_id: int,
        items: Sequence[BatchItem],
        timeout: Optional[float] = None
    ) -> BatchJob:
        """
        Generate certificates for every item and wait for all outcomes.

        Args:
            owner_id: Customer issuing the batch
            template_id: Template for raw data map items
            items: GenerationRequests or raw data maps
            timeout: Optional deadline in seconds for the whole batch

        Returns:
            BatchJob whose outcomes are ordered like ``items``

        Raises:
            BatchValidationError: If the batch is empty or larger than MAX_BATCH_SIZE
        """
        if not items:
            raise BatchValidationError("At least one certificate data set is required")
        if len(items) > MAX_BATCH_SIZE:
            raise BatchValidationError(
                f"Maximum {MAX_BATCH_SIZE} certificates per batch",
                details={"requested": len(items)},
            )

        start_time = time.time()
        job = BatchJob(
            batch_id=str(uuid.uuid4()),
            template_id=template_id,
            total_requested=len(items),
            estimated_completion_seconds=estimate_completion_seconds(len(items), self._max_workers),
        )
        outcomes: List[Optional[BatchItemOutcome]] = [None] * len(items)
        stop_event = threading.Event()
        halt_event = threading.Event()

        logger.info(
            "Batch generation started",
            extra={
                "batch_id": job.batch_id,
                "customer_id": owner_id,
                "template_id": template_id,
                "total_requested": len(items),
                "max_workers": self._max_workers,
                "estimated_seconds": job.estimated_completion_seconds,
            },
        )

        executor = self._get_executor()
        futures: Dict["Future[Certificate]", int] = {}
        for index, item in enumerate(items):
            try:
                request = _coerce_item(template_id, item)
            except (ValidationError, TypeError) as e:
                outcomes[index] = BatchItemOutcome(
                    index=index,
                    status=BatchItemStatus.FAILED,
                    error_code="INVALID_REQUEST",
                    error_message=str(e),
                    retriable=False,
                )
                continue
            future = executor.submit(self._run_item, owner_id, request, stop_event, halt_event)
            futures[future] = index

        try:
            for future in as_completed(futures, timeout=timeout):
                index = futures[future]
                outcomes[index] = self._outcome_from_future(index, future)
        except FuturesTimeoutError:
            stop_event.set()
            for future, index in futures.items():
                if outcomes[index] is not None:
                    continue
                if future.done():
                    outcomes[index] = self._outcome_from_future(index, future)
                    continue
                if future.cancel():
                    error: BatchTimeoutError = BatchTimeoutError("Batch deadline passed before item started")
                else:
                    error = BatchItemAbandonedError("Batch deadline passed while item was running")
                outcomes[index] = _failure(index, error, BatchItemStatus.TIMED_OUT)
            logger.warning(
                "Batch deadline reached",
                extra={"batch_id": job.batch_id, "timeout_s": timeout},
            )

        job.outcomes = [outcome for outcome in outcomes if outcome is not None]
        job.completed_at = utc_now()

        logger.info(
            "Batch generation completed",
            extra={
                **job.summary(),
                "duration_ms": int((time.time() - start_time) * 1000),
            },
        )

        if self._audit_sink is not None:
            self._audit_sink.append(AuditEvent(
                customer_id=owner_id,
                action=AuditAction.BATCH_COMPLETED,
                entity_type="BATCH",
                entity_id=job.batch_id,
                details={
                    "template_id": template_id,
                    "total_requested": job.total_requested,
                    "succeeded": job.succeeded,
                    "failed": job.failed,
                    "timed_out": job.timed_out,
                },
            ))

        return job

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)

    def __enter__(self) -> "BatchCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True)
