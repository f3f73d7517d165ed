#!/usr/bin/env python3
"""
Submission Pipeline Tests
State machine scenarios: success, ledger rejection, preconditions,
reset from any phase and concurrent submission rejection
"""

import asyncio
import logging

import pytest

from config.config import DEFAULT_REPUTATION_STEPS, DEFAULT_VOTE_STEPS, LedgerConfig, SystemConfig
from confidential_submission import (
    ConfidentialSubmissionPipeline,
    ErrorKind,
    SubmissionInProgressError,
    SubmissionPhase,
    SubmissionReceipt,
    SubmissionState,
)
from fhe.fhe_crypto import FHEEncryptionEngine
from ledger.ledger_client import InMemoryLedgerClient
from voting.records import VoteChoice
from zk.zk_proofs import ProofKind

logger = logging.getLogger(__name__)

ADDRESS = "0x" + "ab" * 20


def make_pipeline(submission_timeout: float = 5.0, **ledger_kwargs):
    config = SystemConfig(ledger=LedgerConfig(submission_timeout=submission_timeout))
    ledger = InMemoryLedgerClient(config=config.ledger, **ledger_kwargs)
    pipeline = ConfidentialSubmissionPipeline(config=config, ledger=ledger)
    return pipeline, ledger


def ready_pipeline(**kwargs):
    pipeline, ledger = make_pipeline(**kwargs)
    pipeline.start_session()
    pipeline.connect_identity(ADDRESS)
    return pipeline, ledger


def distinct_phases(states):
    phases = []
    for state in states:
        if not phases or phases[-1] is not state.phase:
            phases.append(state.phase)
    return phases


async def wait_for_phase(pipeline, phase, timeout=2.0):
    async def poll():
        while pipeline.state.phase is not phase:
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout=timeout)


class TestSuccessfulSubmission:

    def test_vote_phases_and_progress(self):
        logger.info("Vote submission: full phase sequence")
        pipeline, ledger = ready_pipeline()
        states = [pipeline.state]
        pipeline.subscribe(states.append)
        received = []

        receipt = asyncio.run(pipeline.submit_vote(1, "yes", on_success=received.append))

        assert distinct_phases(states) == [
            SubmissionPhase.IDLE,
            SubmissionPhase.VALIDATING,
            SubmissionPhase.ENCRYPTING,
            SubmissionPhase.PROVING,
            SubmissionPhase.SUBMITTING,
            SubmissionPhase.SUCCEEDED,
        ]
        encrypting = [s for s in states if s.phase is SubmissionPhase.ENCRYPTING]
        assert [s.progress_percent for s in encrypting if s.progress_percent] == [25, 50, 75, 100]
        assert [s.current_step_label for s in encrypting if s.current_step_label] == DEFAULT_VOTE_STEPS

        progress = [s.progress_percent for s in states]
        assert progress == sorted(progress), "Progress must be non-decreasing"
        assert all(s.last_error is None for s in states)

        assert isinstance(receipt, SubmissionReceipt)
        assert received == [receipt]
        assert receipt.kind is ProofKind.VOTE
        assert receipt.proposal_id == 1
        assert receipt.outcome.accepted
        assert receipt.commitment is not None
        assert isinstance(receipt.timestamp, int) and receipt.timestamp > 10 ** 12, \
            "Receipt timestamp must be epoch milliseconds"
        assert len(ledger.calls) == 1
        assert not pipeline.state.is_submitting

    def test_vote_payload_decrypts_with_session_key(self):
        pipeline, _ = ready_pipeline()
        receipt = asyncio.run(pipeline.submit_vote(9, VoteChoice.NO))
        record = pipeline.engine.decrypt_vote(
            receipt.payload, pipeline.key_manager.key_pair.private_key)
        assert record.proposal_id == 9
        assert record.choice is VoteChoice.NO
        assert record.voter_address == ADDRESS

    def test_reputation_submission(self):
        pipeline, ledger = ready_pipeline()
        labels = []
        pipeline.subscribe(lambda s: labels.append(s.current_step_label))
        succeeded = []

        async def on_success(receipt):
            succeeded.append(receipt)

        async def scenario():
            receipt = await pipeline.submit_reputation(87, on_success=on_success)
            return receipt, await ledger.total_registered_voters()

        receipt, total = asyncio.run(scenario())

        assert receipt.kind is ProofKind.REPUTATION
        assert receipt.proposal_id is None
        assert receipt.commitment is None
        assert succeeded == [receipt]
        assert total == 1
        assert [label for i, label in enumerate(labels)
                if label and (i == 0 or labels[i - 1] != label)] == DEFAULT_REPUTATION_STEPS
        record = pipeline.engine.decrypt_reputation(
            receipt.payload, pipeline.key_manager.key_pair.private_key)
        assert record.value == 87

    def test_private_key_never_logged(self, caplog):
        caplog.set_level(logging.DEBUG)
        pipeline, _ = ready_pipeline()
        private_hex = bytes(pipeline.key_manager.key_pair.private_key).hex()
        asyncio.run(pipeline.submit_vote(1, "yes"))
        assert private_hex not in caplog.text

    def test_metrics(self):
        pipeline, _ = ready_pipeline()
        asyncio.run(pipeline.submit_vote(1, "yes"))
        metrics = pipeline.get_metrics()
        assert metrics["attempts"] == 1
        assert metrics["succeeded"] == 1
        assert metrics["failed"] == 0
        assert set(metrics["performance"]["operations"]) == {
            "validating", "encrypting", "proving", "submitting"}


class TestFailedSubmission:

    def test_ledger_rejection_retains_progress(self):
        pipeline, ledger = ready_pipeline()
        ledger.reject_reason = "Proposal closed"
        errors = []

        result = asyncio.run(pipeline.submit_vote(1, "yes", on_error=errors.append))

        state = pipeline.state
        assert result is None
        assert state.phase is SubmissionPhase.FAILED
        assert state.last_error.kind is ErrorKind.SUBMISSION
        assert state.last_error.message == "Vote submission failed: Proposal closed"
        assert errors == ["Vote submission failed: Proposal closed"]
        assert state.progress_percent == 100, "Progress must not reset on failure"
        assert not state.is_submitting and not state.is_encrypting

    def test_duplicate_vote_rejected(self):
        pipeline, _ = ready_pipeline()

        async def scenario():
            await pipeline.submit_vote(1, "yes")
            return await pipeline.submit_vote(1, "no")

        assert asyncio.run(scenario()) is None
        assert "already voted" in pipeline.state.last_error.message

    def test_ledger_timeout(self):
        pipeline, ledger = ready_pipeline(submission_timeout=0.05)
        ledger.stall = True
        asyncio.run(pipeline.submit_reputation(10))
        error = pipeline.state.last_error
        assert error.kind is ErrorKind.SUBMISSION
        assert error.message.startswith("Reputation submission failed:")

    def test_wallet_not_connected(self):
        pipeline, ledger = make_pipeline()
        pipeline.start_session()
        errors = []

        asyncio.run(pipeline.submit_vote(1, "yes", on_error=errors.append))

        assert pipeline.state.phase is SubmissionPhase.FAILED
        assert pipeline.state.last_error.kind is ErrorKind.PRECONDITION
        assert errors == ["Wallet not connected"]
        assert pipeline.state.progress_percent == 0
        assert ledger.calls == []

    def test_no_active_session(self):
        pipeline, _ = make_pipeline()
        pipeline.connect_identity(ADDRESS)
        asyncio.run(pipeline.submit_vote(1, "yes"))
        assert pipeline.state.last_error.kind is ErrorKind.PRECONDITION
        assert pipeline.state.last_error.message == "No active session"

    @pytest.mark.parametrize("proposal_id, choice", [(0, "yes"), (-1, "yes"), (1, "maybe")])
    def test_invalid_vote_fails_before_encryption(self, proposal_id, choice):
        pipeline, ledger = ready_pipeline()
        phases = []
        pipeline.subscribe(lambda s: phases.append(s.phase))

        asyncio.run(pipeline.submit_vote(proposal_id, choice))

        assert pipeline.state.last_error.kind is ErrorKind.VALIDATION
        assert pipeline.state.last_error.message == "Invalid vote data"
        assert SubmissionPhase.ENCRYPTING not in phases
        assert ledger.calls == []

    def test_invalid_reputation(self):
        pipeline, _ = ready_pipeline()
        asyncio.run(pipeline.submit_reputation(101))
        assert pipeline.state.last_error.message == "Invalid reputation data"

    def test_invalid_identity_is_validation_error(self):
        pipeline, _ = make_pipeline()
        pipeline.start_session()
        pipeline.connect_identity("0x1234")
        asyncio.run(pipeline.submit_vote(1, "yes"))
        assert pipeline.state.last_error.kind is ErrorKind.VALIDATION

    def test_new_attempt_clears_previous_error(self):
        pipeline, ledger = ready_pipeline()
        ledger.reject_reason = "Proposal closed"

        async def scenario():
            await pipeline.submit_vote(1, "yes")
            ledger.reject_reason = None
            return await pipeline.submit_vote(1, "yes")

        assert asyncio.run(scenario()) is not None
        assert pipeline.state.last_error is None
        assert pipeline.state.phase is SubmissionPhase.SUCCEEDED


class UnreachableLedger(InMemoryLedgerClient):

    async def cast_vote(self, proposal_id, ciphertext_hex, proof_hex, sender=None):
        raise ConnectionError("node unreachable")


class BrokenProver(FHEEncryptionEngine):

    def prove(self, record, public_key, ciphertext=None):
        raise RuntimeError("prover crashed")


class TestUnexpectedFailures:

    def test_ledger_transport_error_fails_attempt(self):
        config = SystemConfig()
        pipeline = ConfidentialSubmissionPipeline(
            config=config, ledger=UnreachableLedger(config=config.ledger))
        pipeline.start_session()
        pipeline.connect_identity(ADDRESS)
        errors = []

        result = asyncio.run(pipeline.submit_vote(1, "yes", on_error=errors.append))

        state = pipeline.state
        assert result is None
        assert state.phase is SubmissionPhase.FAILED, "Attempt must not stay in Submitting"
        assert state.last_error.kind is ErrorKind.SUBMISSION
        assert state.last_error.message == "Vote submission failed: node unreachable"
        assert errors == ["Vote submission failed: node unreachable"]
        assert not state.is_submitting
        assert pipeline.get_metrics()["failed"] == 1

        pipeline.ledger = InMemoryLedgerClient(config=config.ledger)
        assert asyncio.run(pipeline.submit_vote(1, "yes")) is not None, \
            "A later attempt must be allowed"

    def test_engine_error_reported_as_encryption_failure(self):
        pipeline = ConfidentialSubmissionPipeline(
            ledger=InMemoryLedgerClient(), engine=BrokenProver())
        pipeline.start_session()
        pipeline.connect_identity(ADDRESS)
        errors = []

        asyncio.run(pipeline.submit_reputation(50, on_error=errors.append))

        state = pipeline.state
        assert state.phase is SubmissionPhase.FAILED
        assert state.last_error.kind is ErrorKind.ENCRYPTION
        assert errors == ["Encryption failed: prover crashed"]
        assert not state.is_encrypting

    def test_cancelled_attempt_publishes_failed(self):
        pipeline, ledger = ready_pipeline()
        ledger.stall = True

        async def scenario():
            task = asyncio.create_task(pipeline.submit_vote(1, "yes"))
            await wait_for_phase(pipeline, SubmissionPhase.SUBMITTING)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            # A new attempt is accepted once the cancelled one has settled
            ledger.stall = False
            return await pipeline.submit_vote(2, "no")

        states = []
        pipeline.subscribe(states.append)
        receipt = asyncio.run(scenario())

        failed = [s for s in states if s.phase is SubmissionPhase.FAILED]
        assert len(failed) == 1
        assert failed[0].last_error.kind is ErrorKind.SUBMISSION
        assert not failed[0].is_submitting
        assert receipt is not None


class TestReset:

    def test_reset_after_success_and_failure(self):
        pipeline, ledger = ready_pipeline()
        asyncio.run(pipeline.submit_vote(1, "yes"))
        pipeline.reset_submission()
        assert pipeline.state == SubmissionState()

        ledger.reject_reason = "nope"
        asyncio.run(pipeline.submit_vote(2, "yes"))
        pipeline.reset_voting_state()
        assert pipeline.state == SubmissionState()
        assert pipeline.state.last_error is None

    def test_reset_before_ledger_call_keeps_attempt_off_ledger(self):
        pipeline, ledger = ready_pipeline()

        def reset_when_proving(state):
            if state.phase is SubmissionPhase.PROVING:
                pipeline.reset_submission()

        pipeline.subscribe(reset_when_proving)
        result = asyncio.run(pipeline.submit_vote(1, "yes"))

        assert result is None
        assert ledger.calls == []
        assert pipeline.state == SubmissionState()

    def test_reset_while_submitting_discards_late_result(self):
        pipeline, ledger = ready_pipeline(submission_timeout=0.2)
        ledger.stall = True

        async def scenario():
            task = asyncio.create_task(pipeline.submit_vote(1, "yes"))
            await wait_for_phase(pipeline, SubmissionPhase.SUBMITTING)
            pipeline.reset_submission()
            assert pipeline.state == SubmissionState()
            return await task

        assert asyncio.run(scenario()) is None
        assert pipeline.state == SubmissionState(), "Superseded attempt must not publish"

    def test_end_session_destroys_keys(self):
        pipeline, _ = make_pipeline()

        async def scenario():
            async with pipeline:
                pipeline.connect_identity(ADDRESS)
                pair = pipeline.key_manager.key_pair
                await pipeline.submit_vote(1, "yes")
            return pair

        pair = asyncio.run(scenario())
        assert pair.is_wiped
        assert not pipeline.session_active
        assert pipeline.state == SubmissionState()


class TestConcurrency:

    def test_second_submission_rejected_while_in_flight(self):
        pipeline, ledger = ready_pipeline()
        ledger.latency = 0.1

        async def scenario():
            task = asyncio.create_task(pipeline.submit_vote(1, "yes"))
            await wait_for_phase(pipeline, SubmissionPhase.SUBMITTING)
            with pytest.raises(SubmissionInProgressError):
                await pipeline.submit_vote(2, "no")
            return await task

        receipt = asyncio.run(scenario())
        assert receipt is not None, "Running attempt must be unaffected"
        assert pipeline.state.phase is SubmissionPhase.SUCCEEDED
        assert len(ledger.calls) == 1

    def test_submission_allowed_after_terminal_phase(self):
        pipeline, _ = ready_pipeline()

        async def scenario():
            first = await pipeline.submit_vote(1, "yes")
            second = await pipeline.submit_vote(2, "yes")
            return first, second

        first, second = asyncio.run(scenario())
        assert first is not None and second is not None


class TestObservers:

    def test_unsubscribe(self):
        pipeline, _ = ready_pipeline()
        seen = []
        unsubscribe = pipeline.subscribe(seen.append)
        unsubscribe()
        asyncio.run(pipeline.submit_vote(1, "yes"))
        assert seen == []

    def test_raising_listener_is_ignored(self):
        pipeline, _ = ready_pipeline()

        def broken(state):
            raise RuntimeError("render failed")

        pipeline.subscribe(broken)
        assert asyncio.run(pipeline.submit_vote(1, "yes")) is not None
