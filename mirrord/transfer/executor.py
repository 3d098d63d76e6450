from __future__ import annotations

import logging
import time
from contextlib import closing

from mirrord.content.addresser import ContentAddresser
from mirrord.content.types import ContentItem, Fingerprint
from mirrord.core.errors import (
    ContentMismatchError,
    RetryExhaustedError,
    TransferError,
    error_code,
)
from mirrord.jobs.types import TransferAction, TransferOutcome, TransferResult
from mirrord.storage.base import DestinationEndpoint, SourceEndpoint
from mirrord.transfer.retry import RetryPolicy

logger = logging.getLogger(__name__)


class TransferExecutor:
    """Copies single items from a source to a destination with verification.

    Bytes are streamed into a staging object while the source side is hashed.
    The staged copy is then read back and fingerprinted; only when it matches
    the expected fingerprint is it published under its final key. Any failure
    discards the staging object, so a partially written item is never visible.
    """

    def __init__(
        self,
        addresser: ContentAddresser,
        retry_policy: RetryPolicy,
        *,
        chunk_size: int | None = None,
        job_name: str | None = None,
    ):
        self._addresser = addresser
        self._retry = retry_policy
        self.chunk_size = chunk_size or addresser.chunk_size
        self._job_name = job_name

    def _expected_fingerprint(self, item: ContentItem, read: Fingerprint) -> Fingerprint:
        planned = item.fingerprint
        if planned is not None and planned.algorithm == self._addresser.algorithm:
            return planned
        return read

    def _copy_once(
        self,
        item: ContentItem,
        source: SourceEndpoint,
        destination: DestinationEndpoint,
    ) -> tuple[ContentItem, Fingerprint]:
        staged = destination.stage(item.key)
        try:
            stream = self._addresser.start()
            with closing(source.read(item.key, chunk_size=self.chunk_size)) as chunks:
                for chunk in chunks:
                    stream.update(chunk)
                    staged.write(chunk)
            staged.close()
            read_fp = stream.finish()

            if read_fp.size != item.size:
                raise ContentMismatchError(
                    f"{item.key}: read {read_fp.size} bytes but the listing reported {item.size}"
                )
            expected = self._expected_fingerprint(item, read_fp)
            if not read_fp.matches(expected):
                raise ContentMismatchError(f"{item.key}: source changed since planning ({read_fp} != {expected})")

            with closing(staged.read_back(self.chunk_size)) as chunks:
                staged_fp = self._addresser.fingerprint_chunks(chunks)
            if not staged_fp.matches(expected):
                raise ContentMismatchError(f"{item.key}: staged copy {staged_fp} does not match {expected}")

            published = staged.commit(modified_at=item.modified_at)
        except BaseException:
            staged.discard()
            raise
        return published, staged_fp

    def _log_retry(self, key: str, attempt: int, exc: BaseException, delay: float) -> None:
        logger.warning(
            "Transfer of %s failed on attempt %d (%s); retrying in %.2fs",
            key,
            attempt,
            exc,
            delay,
            extra={"job": self._job_name, "key": key, "attempt": attempt},
        )

    def _failed(
        self,
        item: ContentItem,
        action: TransferAction,
        outcome: TransferOutcome,
        exc: BaseException,
        *,
        attempts: int,
        started: float,
    ) -> TransferResult:
        cause = exc.last_error if isinstance(exc, RetryExhaustedError) else exc
        logger.error(
            "%s of %s failed after %d attempt(s): %s",
            action.value,
            item.key,
            attempts,
            cause,
            extra={"job": self._job_name, "key": item.key, "attempt": attempts},
        )
        return TransferResult(
            key=item.key,
            action=action,
            outcome=outcome,
            elapsed_seconds=time.monotonic() - started,
            attempts=attempts,
            error_code=error_code(exc),
            error_message=str(cause),
        )

    def transfer(
        self,
        item: ContentItem,
        source: SourceEndpoint,
        destination: DestinationEndpoint,
        *,
        action: TransferAction = TransferAction.ADD,
    ) -> TransferResult:
        if action == TransferAction.DELETE:
            raise ValueError("Use delete() for deletions")

        started = time.monotonic()
        attempts = 0

        def attempt() -> tuple[ContentItem, Fingerprint]:
            nonlocal attempts
            attempts += 1
            return self._copy_once(item, source, destination)

        try:
            published, fingerprint = self._retry.execute(
                attempt,
                on_retry=lambda n, exc, delay: self._log_retry(item.key, n, exc, delay),
            )
        except RetryExhaustedError as exc:
            outcome = (
                TransferOutcome.FAILED_FATAL
                if isinstance(exc.last_error, ContentMismatchError)
                else TransferOutcome.FAILED_RETRYABLE
            )
            return self._failed(item, action, outcome, exc, attempts=attempts, started=started)
        except (TransferError, OSError) as exc:
            return self._failed(item, action, TransferOutcome.FAILED_FATAL, exc, attempts=attempts, started=started)

        self._addresser.remember(source, item, fingerprint)
        self._addresser.remember(destination, published, fingerprint)
        elapsed = time.monotonic() - started
        logger.debug(
            "%s %s (%d bytes, %d attempt(s), %.3fs)",
            action.value,
            item.key,
            fingerprint.size,
            attempts,
            elapsed,
            extra={"job": self._job_name, "key": item.key, "attempt": attempts},
        )
        return TransferResult(
            key=item.key,
            action=action,
            outcome=TransferOutcome.SUCCEEDED,
            bytes_transferred=fingerprint.size,
            elapsed_seconds=elapsed,
            attempts=attempts,
            fingerprint=fingerprint,
        )

    def delete(self, item: ContentItem, destination: DestinationEndpoint) -> TransferResult:
        started = time.monotonic()
        attempts = 0

        def attempt() -> None:
            nonlocal attempts
            attempts += 1
            destination.delete(item.key)

        try:
            self._retry.execute(
                attempt,
                on_retry=lambda n, exc, delay: self._log_retry(item.key, n, exc, delay),
            )
        except RetryExhaustedError as exc:
            return self._failed(
                item, TransferAction.DELETE, TransferOutcome.FAILED_RETRYABLE, exc, attempts=attempts, started=started
            )
        except (TransferError, OSError) as exc:
            return self._failed(
                item, TransferAction.DELETE, TransferOutcome.FAILED_FATAL, exc, attempts=attempts, started=started
            )

        self._addresser.forget(destination, item.key)
        return TransferResult(
            key=item.key,
            action=TransferAction.DELETE,
            outcome=TransferOutcome.SUCCEEDED,
            elapsed_seconds=time.monotonic() - started,
            attempts=attempts,
        )
