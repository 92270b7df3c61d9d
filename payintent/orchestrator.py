"""
Verification orchestrator.

Drives `EvmAdapter.verify` for stored intents, either on demand or from a
fixed-interval background sweep, and persists the resolved status.
"""
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .chain.adapter import EvmAdapter
from .config import DEFAULT_MAX_CONCURRENCY, DEFAULT_POLL_INTERVAL
from .exceptions import IntentNotFoundError
from .models import PaymentStatus, VerificationMeta, VerificationResult
from .state import resolve_next_status
from .storage.store import EVENT_INTENT_VERIFIED, EVENT_INTENT_VERIFY_ERROR, IntentStore

logger = logging.getLogger(__name__)

LOG_VERIFY = "intent.verify"
LOG_POLL_VERIFY = "intent.poll.verify"
LOG_POLL_VERIFY_ERROR = "intent.poll.verify_error"


@dataclass
class SweepReport:
    """Counts from one pass over the open intents"""
    checked: int = 0
    changed: int = 0
    errored: int = 0


class _InFlight:
    __slots__ = ("future", "waiters")

    def __init__(self):
        self.future: Future = Future()
        self.waiters = 0


class VerificationOrchestrator:
    """
    Runs verifications with at most one attempt in flight per intent.

    A caller that asks for an intent already being verified waits for the
    running attempt and receives the same `VerificationResult` object. The
    number of adapter calls running at once, across sweep and on-demand
    callers, is capped by `max_concurrency`.
    """

    def __init__(
        self,
        adapter: EvmAdapter,
        store: IntentStore,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        now: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the orchestrator

        Args:
            adapter: Verification engine
            store: Intent store
            poll_interval: Seconds between background sweeps
            max_concurrency: Maximum concurrent adapter verifications
            now: Clock returning an aware UTC datetime
            logger: Optional logger instance
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

        self.adapter = adapter
        self.store = store
        self.poll_interval = poll_interval
        self.max_concurrency = max_concurrency
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.logger = logger or logging.getLogger(__name__)

        self._in_flight: Dict[str, _InFlight] = {}
        self._in_flight_lock = threading.Lock()
        self._chain_slots = threading.BoundedSemaphore(max_concurrency)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Single intent
    # ------------------------------------------------------------------

    def verify(self, intent_id: str) -> VerificationResult:
        """
        Verify one stored intent and persist the outcome.

        Returns:
            The adapter's result with `status` replaced by the status that
            was persisted

        Raises:
            IntentNotFoundError: If no intent has this id
        """
        return self._verify_deduplicated(intent_id, LOG_VERIFY)

    def in_flight(self) -> Dict[str, int]:
        """Intent ids currently being verified, with how many callers are waiting on each."""
        with self._in_flight_lock:
            return {intent_id: entry.waiters for intent_id, entry in self._in_flight.items()}

    def _verify_deduplicated(self, intent_id: str, log_type: str) -> VerificationResult:
        with self._in_flight_lock:
            entry = self._in_flight.get(intent_id)
            owner = entry is None
            if owner:
                entry = _InFlight()
                self._in_flight[intent_id] = entry
            else:
                entry.waiters += 1

        if not owner:
            self.logger.debug(f"Intent {intent_id} already being verified, waiting")
            try:
                return entry.future.result()
            finally:
                with self._in_flight_lock:
                    entry.waiters -= 1

        try:
            result = self._verify_once(intent_id, log_type)
        except BaseException as e:
            entry.future.set_exception(e)
            raise
        else:
            entry.future.set_result(result)
            return result
        finally:
            with self._in_flight_lock:
                self._in_flight.pop(intent_id, None)

    def _verify_once(self, intent_id: str, log_type: str) -> VerificationResult:
        stored = self.store.get_intent(intent_id)
        if stored is None:
            raise IntentNotFoundError(intent_id)

        previous_status = stored.status
        intent = stored.intent.model_copy(update={"status": previous_status})

        with self._chain_slots:
            result = self.adapter.verify(intent)

        next_status = resolve_next_status(previous_status, result)
        meta = VerificationMeta(
            tx_hash=result.tx_hash,
            confirmations=result.confirmations,
            last_checked_at=self.now(),
        )
        changed = self.store.update_intent_status(intent_id, next_status, meta)

        payload = {
            "previousStatus": previous_status.value,
            "nextStatus": next_status.value,
            "changed": changed,
            "txHash": result.tx_hash,
            "confirmations": result.confirmations,
            "reason": result.reason,
            "errorCode": result.error_code.value if result.error_code else None,
        }
        self.store.add_event(intent_id, EVENT_INTENT_VERIFIED, payload)
        self._structured_log(log_type, intentId=intent_id, **payload)

        return result.model_copy(update={"status": next_status})

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def run_sweep(self) -> SweepReport:
        """
        Verify every PENDING or DETECTED intent once.

        A failure on one intent marks that intent FAILED and never stops
        the rest of the sweep.
        """
        report = SweepReport()
        intents = self.store.list_pending_intents()
        if not intents:
            return report

        with ThreadPoolExecutor(
            max_workers=min(self.max_concurrency, len(intents)),
            thread_name_prefix="payintent-sweep"
        ) as executor:
            futures = [
                (intent.id, intent.status, executor.submit(self._verify_deduplicated, intent.id, LOG_POLL_VERIFY))
                for intent in intents
            ]
            for intent_id, previous_status, future in futures:
                report.checked += 1
                try:
                    result = future.result()
                except Exception as e:
                    report.errored += 1
                    self._mark_failed(intent_id, previous_status, e)
                    continue
                if result.status != previous_status:
                    report.changed += 1

        self.logger.info(
            f"Sweep finished: checked={report.checked} changed={report.changed} errored={report.errored}"
        )
        return report

    def _mark_failed(self, intent_id: str, previous_status: PaymentStatus, error: Exception) -> None:
        reason = f"verifier exception: {error}"
        self.logger.error(f"Verification of intent {intent_id} raised: {error}", exc_info=error)
        try:
            changed = self.store.update_intent_status(
                intent_id,
                PaymentStatus.FAILED,
                VerificationMeta(last_checked_at=self.now()),
            )
            self.store.add_event(intent_id, EVENT_INTENT_VERIFY_ERROR, {
                "previousStatus": previous_status.value,
                "nextStatus": PaymentStatus.FAILED.value,
                "changed": changed,
                "reason": reason,
            })
        except Exception as e:
            self.logger.error(f"Could not mark intent {intent_id} as failed: {e}")
            return
        self._structured_log(
            LOG_POLL_VERIFY_ERROR,
            intentId=intent_id,
            previousStatus=previous_status.value,
            nextStatus=PaymentStatus.FAILED.value,
            changed=changed,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background sweep thread. Calling it twice is a no-op."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="payintent-poller", daemon=True)
        self._thread.start()
        self.logger.info(f"Started verification sweep every {self.poll_interval}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the sweep thread to exit and wait for the current sweep to finish."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.run_sweep()
            except Exception as e:
                self.logger.error(f"Verification sweep failed: {e}")

    def _structured_log(self, log_type: str, **fields: Any) -> None:
        record = {"timestamp": self.now().isoformat(), "type": log_type}
        record.update(fields)
        self.logger.info(json.dumps(record, default=str))
