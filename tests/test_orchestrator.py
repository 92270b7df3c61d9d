"""
Tests for the verification orchestrator.
"""
import json
import logging
import threading
import time
from unittest.mock import patch

import pytest

from payintent.chain.adapter import EvmAdapter
from payintent.chain.client import EvmTransaction
from payintent.exceptions import ErrorCode, IntentNotFoundError, RpcError
from payintent.models import PaymentStatus
from payintent.orchestrator import SweepReport, VerificationOrchestrator
from payintent.storage import EVENT_INTENT_VERIFIED, EVENT_INTENT_VERIFY_ERROR

from conftest import (
    MockChainClient, TEST_CHAIN_ID, TEST_LATEST_BLOCK, TEST_RECIPIENT, TEST_SCAN_BLOCKS, TEST_TX_HASH,
    make_intent
)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def _paid(chain_client, block_number=TEST_LATEST_BLOCK - 4, value=1000):
    chain_client.blocks[block_number] = [
        EvmTransaction(hash=TEST_TX_HASH, to=TEST_RECIPIENT, value=value, block_number=block_number)
    ]


class BlockingClient(MockChainClient):
    """Holds every latest_block call until released."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def latest_block(self):
        self.entered.set()
        self.release.wait(5)
        return super().latest_block()


class ConcurrencyTrackingClient(MockChainClient):
    """Records the highest number of overlapping latest_block calls."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.active = 0
        self.max_active = 0

    def latest_block(self):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(0.02)
            return super().latest_block()
        finally:
            with self._lock:
                self.active -= 1


def _orchestrator_for(client, store, clock, max_concurrency=4):
    adapter = EvmAdapter(client, chain_id=TEST_CHAIN_ID, scan_blocks=TEST_SCAN_BLOCKS, now=clock)
    return VerificationOrchestrator(adapter, store, poll_interval=0.05, max_concurrency=max_concurrency, now=clock)


class TestVerify:

    def test_confirms_and_persists(self, orchestrator, store, chain_client, clock):
        store.create_intent(make_intent())
        _paid(chain_client)

        result = orchestrator.verify("intent-1")

        assert result.status == PaymentStatus.CONFIRMED
        assert result.confirmations == 5
        stored = store.get_intent("intent-1")
        assert stored.status == PaymentStatus.CONFIRMED
        assert stored.tx_hash == TEST_TX_HASH
        assert stored.last_checked_at == clock()

    def test_appends_verified_event(self, orchestrator, store, chain_client):
        store.create_intent(make_intent())
        _paid(chain_client)

        orchestrator.verify("intent-1")

        event = store.list_events("intent-1")[-1]
        assert event.type == EVENT_INTENT_VERIFIED
        assert event.payload["previousStatus"] == "PENDING"
        assert event.payload["nextStatus"] == "CONFIRMED"
        assert event.payload["changed"] is True
        assert event.payload["txHash"] == TEST_TX_HASH
        assert event.payload["errorCode"] is None

    def test_pending_stays_pending(self, orchestrator, store):
        store.create_intent(make_intent())

        result = orchestrator.verify("intent-1")

        assert result.status == PaymentStatus.PENDING
        assert store.list_events("intent-1")[-1].payload["changed"] is False

    def test_unknown_intent(self, orchestrator):
        with pytest.raises(IntentNotFoundError):
            orchestrator.verify("missing")
        assert orchestrator.in_flight() == {}

    def test_terminal_status_never_regresses(self, orchestrator, store, chain_client):
        """Scenario E: a later failure cannot move a CONFIRMED intent."""
        store.create_intent(make_intent())
        _paid(chain_client)
        orchestrator.verify("intent-1")

        chain_client.chain_id = 1
        result = orchestrator.verify("intent-1")

        assert result.status == PaymentStatus.CONFIRMED
        assert result.error_code == ErrorCode.CHAIN_MISMATCH
        assert store.get_intent("intent-1").status == PaymentStatus.CONFIRMED

    def test_rpc_failure_is_terminal(self, orchestrator, store, chain_client):
        store.create_intent(make_intent())
        chain_client.latest_error = RpcError("node down")

        result = orchestrator.verify("intent-1")

        assert result.status == PaymentStatus.FAILED
        assert result.error_code == ErrorCode.RPC_ERROR
        assert store.get_intent("intent-1").status == PaymentStatus.FAILED

    def test_structured_log_record(self, orchestrator, store, caplog):
        store.create_intent(make_intent())

        with caplog.at_level(logging.INFO, logger="payintent.orchestrator"):
            orchestrator.verify("intent-1")

        records = [json.loads(r.getMessage()) for r in caplog.records if r.getMessage().startswith("{")]
        assert records[-1]["type"] == "intent.verify"
        assert records[-1]["intentId"] == "intent-1"
        assert records[-1]["nextStatus"] == "PENDING"


class TestDeduplication:
    """Scenario D: concurrent requests for one intent share one attempt."""

    def test_concurrent_callers_share_one_attempt(self, store, clock):
        client = BlockingClient()
        orchestrator = _orchestrator_for(client, store, clock)
        store.create_intent(make_intent())
        _paid(client)
        results = [None, None]

        def call(index):
            results[index] = orchestrator.verify("intent-1")

        first = threading.Thread(target=call, args=(0,))
        second = threading.Thread(target=call, args=(1,))
        first.start()
        assert client.entered.wait(5)
        second.start()
        assert _wait_for(lambda: orchestrator.in_flight().get("intent-1") == 1)

        client.release.set()
        first.join(5)
        second.join(5)

        assert results[0] is results[1]
        assert results[0].status == PaymentStatus.CONFIRMED
        assert client.latest_block_calls == 1
        verified = [e for e in store.list_events("intent-1") if e.type == EVENT_INTENT_VERIFIED]
        assert len(verified) == 1
        assert orchestrator.in_flight() == {}

    def test_waiters_see_the_owner_exception(self, store, clock):
        client = BlockingClient()
        orchestrator = _orchestrator_for(client, store, clock)
        store.create_intent(make_intent())
        errors = []

        def call():
            try:
                orchestrator.verify("intent-1")
            except RuntimeError as e:
                errors.append(e)

        with patch.object(orchestrator.store, "update_intent_status", side_effect=RuntimeError("disk full")):
            threads = [threading.Thread(target=call) for _ in range(2)]
            threads[0].start()
            assert client.entered.wait(5)
            threads[1].start()
            assert _wait_for(lambda: orchestrator.in_flight().get("intent-1") == 1)
            client.release.set()
            for thread in threads:
                thread.join(5)

        assert len(errors) == 2
        assert errors[0] is errors[1]

    def test_sequential_calls_verify_again(self, orchestrator, store, chain_client):
        store.create_intent(make_intent())

        orchestrator.verify("intent-1")
        orchestrator.verify("intent-1")

        assert chain_client.latest_block_calls == 2


class TestSweep:

    def test_empty(self, orchestrator):
        assert orchestrator.run_sweep() == SweepReport(checked=0, changed=0, errored=0)

    def test_isolates_failures(self, orchestrator, store, chain_client, adapter):
        store.create_intent(make_intent("paid", reference="paid"))
        store.create_intent(make_intent("waiting", reference="waiting", amount=10**20))
        store.create_intent(make_intent("broken", reference="broken"))
        _paid(chain_client)
        real_verify = adapter.verify

        def verify(intent):
            if intent.id == "broken":
                raise KeyError("boom")
            return real_verify(intent)

        with patch.object(adapter, "verify", side_effect=verify):
            report = orchestrator.run_sweep()

        assert report == SweepReport(checked=3, changed=1, errored=1)
        assert store.get_intent("paid").status == PaymentStatus.CONFIRMED
        assert store.get_intent("waiting").status == PaymentStatus.PENDING
        assert store.get_intent("broken").status == PaymentStatus.FAILED

        error_event = store.list_events("broken")[-1]
        assert error_event.type == EVENT_INTENT_VERIFY_ERROR
        assert error_event.payload["reason"].startswith("verifier exception:")
        assert "boom" in error_event.payload["reason"]
        assert error_event.payload["nextStatus"] == "FAILED"

    def test_skips_terminal_intents(self, orchestrator, store, chain_client):
        store.create_intent(make_intent())
        _paid(chain_client)
        orchestrator.verify("intent-1")
        calls = chain_client.latest_block_calls

        assert orchestrator.run_sweep().checked == 0
        assert chain_client.latest_block_calls == calls

    def test_detected_then_confirmed(self, orchestrator, store, chain_client):
        store.create_intent(make_intent(min_confirmations=3))
        _paid(chain_client, block_number=TEST_LATEST_BLOCK)

        orchestrator.run_sweep()
        assert store.get_intent("intent-1").status == PaymentStatus.DETECTED

        chain_client.latest = TEST_LATEST_BLOCK + 2
        report = orchestrator.run_sweep()

        assert report.changed == 1
        stored = store.get_intent("intent-1")
        assert stored.status == PaymentStatus.CONFIRMED
        assert stored.confirmations == 3

    def test_concurrency_is_bounded(self, store, clock):
        client = ConcurrencyTrackingClient()
        orchestrator = _orchestrator_for(client, store, clock, max_concurrency=2)
        for index in range(6):
            store.create_intent(make_intent(f"intent-{index}", reference=f"ref-{index}"))

        report = orchestrator.run_sweep()

        assert report.checked == 6
        assert client.max_active <= 2

    def test_failure_while_marking_is_swallowed(self, orchestrator, store, adapter):
        store.create_intent(make_intent())

        with patch.object(adapter, "verify", side_effect=ValueError("bad")), \
             patch.object(store, "add_event", side_effect=RuntimeError("db gone")):
            report = orchestrator.run_sweep()

        assert report.errored == 1


class TestBackgroundLoop:

    def test_start_and_stop(self, orchestrator, store, chain_client):
        store.create_intent(make_intent())
        _paid(chain_client)

        orchestrator.start()
        try:
            assert orchestrator.running
            assert _wait_for(lambda: store.get_intent("intent-1").status == PaymentStatus.CONFIRMED)
        finally:
            orchestrator.stop(timeout=5)

        assert not orchestrator.running

    def test_start_twice_is_noop(self, orchestrator):
        orchestrator.start()
        thread = orchestrator._thread
        orchestrator.start()
        try:
            assert orchestrator._thread is thread
        finally:
            orchestrator.stop(timeout=5)

    def test_loop_survives_sweep_errors(self, orchestrator, store):
        calls = []

        def failing_sweep():
            calls.append(1)
            raise RuntimeError("store unavailable")

        with patch.object(orchestrator, "run_sweep", side_effect=failing_sweep):
            orchestrator.start()
            try:
                assert _wait_for(lambda: len(calls) >= 2)
            finally:
                orchestrator.stop(timeout=5)


def test_invalid_settings(adapter, store):
    with pytest.raises(ValueError):
        VerificationOrchestrator(adapter, store, max_concurrency=0)
    with pytest.raises(ValueError):
        VerificationOrchestrator(adapter, store, poll_interval=0)
