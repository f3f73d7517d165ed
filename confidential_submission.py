#!/usr/bin/env python3
"""
Confidential Submission Pipeline
================================
Client-side state machine that takes a vote or reputation claim from user
intent to ledger acknowledgement without ever exposing the plaintext:

    Idle -> Validating -> Encrypting -> Proving -> Submitting -> Succeeded | Failed

One attempt may be in flight per session. Observers receive immutable
SubmissionState snapshots; callers receive the receipt or an error message
through callbacks.
"""

import asyncio
import contextlib
import functools
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from config.config import SystemConfig, load_config
from fhe.fhe_crypto import (
    Commitment,
    EncryptedPayload,
    FHEEncryptionEngine,
    FHEError,
    SessionKeyManager,
    generate_vote_commitment,
)
from ledger.ledger_client import (
    InMemoryLedgerClient,
    JsonRpcLedgerClient,
    LedgerClient,
    LedgerError,
    SubmissionError,
    TransactionOutcome,
)
from utils.utils import PerformanceMonitor, create_performance_report, setup_logging, shorten
from voting.records import (
    PreconditionError,
    ReputationRecord,
    ValidationError,
    VoteChoice,
    VoteRecord,
    require_valid,
)
from zk.zk_proofs import ProofError, ProofKind, ProofVerifier, ZKError

logger = logging.getLogger(__name__)

# ============================================================================
# STATE
# ============================================================================


class SubmissionPhase(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    ENCRYPTING = "encrypting"
    PROVING = "proving"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SubmissionPhase.SUCCEEDED, SubmissionPhase.FAILED)


class ErrorKind(Enum):
    PRECONDITION = "precondition"
    VALIDATION = "validation"
    ENCRYPTION = "encryption"
    PROOF = "proof"
    SUBMISSION = "submission"


@dataclass(frozen=True)
class ErrorInfo:
    """Error descriptor surfaced to the UI"""
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class SubmissionState:
    """Observable snapshot of the pipeline"""
    phase: SubmissionPhase = SubmissionPhase.IDLE
    progress_percent: int = 0
    current_step_label: str = ""
    last_error: Optional[ErrorInfo] = None

    @property
    def is_encrypting(self) -> bool:
        return self.phase in (SubmissionPhase.ENCRYPTING, SubmissionPhase.PROVING)

    @property
    def is_submitting(self) -> bool:
        return not (self.phase is SubmissionPhase.IDLE or self.phase.is_terminal)


@dataclass(frozen=True)
class SubmissionReceipt:
    """Result of a successful submission"""
    kind: ProofKind
    payload: EncryptedPayload
    outcome: TransactionOutcome
    proposal_id: Optional[int] = None
    commitment: Optional[Commitment] = None
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))


class PipelineError(Exception):
    """Base pipeline error"""
    pass


class SubmissionInProgressError(PipelineError):
    """A submission was requested while another attempt is in flight"""
    pass


class _AttemptSuperseded(Exception):
    pass


Callback = Callable[[Any], Any]

# ============================================================================
# PIPELINE
# ============================================================================


class ConfidentialSubmissionPipeline:
    """
    Session-scoped confidential submission pipeline.

    The session key pair lives from start_session() to end_session(). Each
    submit_* call runs a full attempt: validation, staged encryption with
    monotonic progress, local proof verification, then a single ledger call
    that is never retried.
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        ledger: Optional[LedgerClient] = None,
        key_manager: Optional[SessionKeyManager] = None,
        engine: Optional[FHEEncryptionEngine] = None,
        verifier: Optional[ProofVerifier] = None
    ):
        self.config = config or SystemConfig()
        self.key_manager = key_manager or SessionKeyManager(
            allow_insecure=self.config.encryption.allow_insecure_test_randomness)
        self.engine = engine or FHEEncryptionEngine.from_config(
            self.config.encryption, self.config.proof)
        self.verifier = verifier or ProofVerifier(
            signature_bytes=self.config.proof.signature_bytes)
        self.ledger = ledger or JsonRpcLedgerClient(self.config.ledger)

        self.performance_monitor = PerformanceMonitor()

        self._state = SubmissionState()
        self._listeners: List[Callable[[SubmissionState], Any]] = []
        self._identity: Optional[str] = None

        # Bumped by reset; an attempt whose generation is stale is discarded
        self._generation = 0
        self._in_flight: Optional[int] = None
        self._payload: Optional[EncryptedPayload] = None

        self._attempts = 0
        self._succeeded = 0
        self._failed = 0

    # ------------------------------------------------------------------
    # Session and identity
    # ------------------------------------------------------------------

    @property
    def session_active(self) -> bool:
        return self.key_manager.has_key_pair

    def start_session(self):
        """Create the session key pair"""
        self.key_manager.generate_key_pair()
        logger.info(" Submission session started")

    def end_session(self):
        """Reset submission state and destroy the session key pair"""
        self.reset_submission()
        self.key_manager.destroy()
        logger.info(" Submission session ended")

    async def __aenter__(self):
        self.start_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.end_session()
        return False

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    def connect_identity(self, address: str):
        self._identity = address
        logger.info(f"Identity connected: {shorten(str(address))}")

    def disconnect_identity(self):
        self._identity = None
        logger.info("Identity disconnected")

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> SubmissionState:
        return self._state

    def subscribe(self, listener: Callable[[SubmissionState], Any]) -> Callable[[], None]:
        """Register a state listener; returns an unsubscribe callable"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: SubmissionState):
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"State listener {listener!r} failed: {e}")

    def _update(self, generation: int, **changes):
        if generation != self._generation:
            raise _AttemptSuperseded()
        self._set_state(replace(self._state, **changes))

    def _ensure_current(self, generation: int):
        if generation != self._generation:
            raise _AttemptSuperseded()

    def reset_submission(self):
        """Return to Idle and supersede any in-flight attempt"""
        if self._in_flight is not None:
            logger.info("Superseding in-flight submission attempt")
        self._generation += 1
        self._in_flight = None
        self._payload = None
        self._set_state(SubmissionState())

    reset_voting_state = reset_submission

    # ------------------------------------------------------------------
    # Submission entry points
    # ------------------------------------------------------------------

    async def submit_vote(
        self,
        proposal_id: int,
        choice: Union[VoteChoice, str],
        on_success: Optional[Callback] = None,
        on_error: Optional[Callback] = None
    ) -> Optional[SubmissionReceipt]:
        """Encrypt, prove and cast a vote"""
        def build(voter: str) -> VoteRecord:
            return VoteRecord(
                proposal_id=proposal_id,
                choice=choice,
                voter_address=voter,
                timestamp=int(time.time() * 1000)
            )

        return await self._run_attempt(
            ProofKind.VOTE, build, self.config.pipeline.vote_steps,
            on_success, on_error)

    async def submit_reputation(
        self,
        value: int,
        on_success: Optional[Callback] = None,
        on_error: Optional[Callback] = None
    ) -> Optional[SubmissionReceipt]:
        """Encrypt, prove and register a reputation claim"""
        def build(voter: str) -> ReputationRecord:
            return ReputationRecord(
                value=value,
                voter_address=voter,
                timestamp=int(time.time() * 1000)
            )

        return await self._run_attempt(
            ProofKind.REPUTATION, build, self.config.pipeline.reputation_steps,
            on_success, on_error)

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    def _measure(self, operation: str):
        if self.config.enable_metrics:
            return self.performance_monitor.start_operation(operation)
        return contextlib.nullcontext()

    @staticmethod
    async def _notify(callback: Optional[Callback], argument: Any):
        if callback is None:
            return
        result = callback(argument)
        if inspect.isawaitable(result):
            await result

    @staticmethod
    async def _offload(func: Callable, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    def _describe(self, kind: ProofKind, error: Exception) -> ErrorInfo:
        if isinstance(error, PreconditionError):
            return ErrorInfo(ErrorKind.PRECONDITION, str(error))
        if isinstance(error, ValidationError):
            return ErrorInfo(ErrorKind.VALIDATION, str(error))
        if isinstance(error, FHEError):
            return ErrorInfo(ErrorKind.ENCRYPTION, f"Encryption failed: {error}")
        if isinstance(error, ZKError):
            return ErrorInfo(ErrorKind.PROOF, f"Proof generation failed: {error}")
        noun = "Vote" if kind is ProofKind.VOTE else "Reputation"
        return ErrorInfo(ErrorKind.SUBMISSION, f"{noun} submission failed: {error}")

    def _describe_unexpected(self, kind: ProofKind, error: Any) -> ErrorInfo:
        """Attribute a non-domain failure to the phase it interrupted"""
        phase = self._state.phase
        if phase in (SubmissionPhase.IDLE, SubmissionPhase.VALIDATING):
            return ErrorInfo(ErrorKind.VALIDATION, f"Validation failed: {error}")
        if phase is SubmissionPhase.ENCRYPTING:
            return ErrorInfo(ErrorKind.ENCRYPTION, f"Encryption failed: {error}")
        if phase is SubmissionPhase.PROVING:
            return ErrorInfo(ErrorKind.PROOF, f"Proof generation failed: {error}")
        noun = "Vote" if kind is ProofKind.VOTE else "Reputation"
        return ErrorInfo(ErrorKind.SUBMISSION, f"{noun} submission failed: {error}")

    def _fail(self, generation: int, error: ErrorInfo) -> bool:
        """Publish Failed for a current attempt; False if it was superseded"""
        if generation != self._generation:
            logger.info(f"Attempt {generation} failed after reset: {error.message}")
            return False
        self._failed += 1
        logger.error(f" {error.message}")
        self._set_state(replace(
            self._state, phase=SubmissionPhase.FAILED, last_error=error))
        return True

    async def _run_attempt(self, kind: ProofKind, build: Callable[[str], Any],
                           steps: List[str], on_success: Optional[Callback],
                           on_error: Optional[Callback]) -> Optional[SubmissionReceipt]:
        if self._in_flight is not None:
            raise SubmissionInProgressError(
                f"Submission already in progress ({self._state.phase.value})")

        self._generation += 1
        generation = self._generation
        self._in_flight = generation
        self._attempts += 1

        try:
            self._set_state(SubmissionState())
            receipt = await self._execute(generation, kind, build, steps)

        except _AttemptSuperseded:
            logger.info(f"Attempt {generation} superseded, discarding result")
            return None

        except (PreconditionError, ValidationError, FHEError, ZKError, LedgerError) as e:
            error = self._describe(kind, e)
            if self._fail(generation, error):
                await self._notify(on_error, error.message)
            return None

        except asyncio.CancelledError:
            self._fail(generation, self._describe_unexpected(kind, "cancelled"))
            raise

        except Exception as e:
            logger.exception(f"Unexpected error during {self._state.phase.value}")
            error = self._describe_unexpected(kind, e)
            if self._fail(generation, error):
                await self._notify(on_error, error.message)
            return None

        finally:
            if self._in_flight == generation:
                self._in_flight = None
                self._payload = None

        self._succeeded += 1
        await self._notify(on_success, receipt)
        return receipt

    async def _execute(self, generation: int, kind: ProofKind,
                       build: Callable[[str], Any], steps: List[str]) -> SubmissionReceipt:
        # Validating
        self._update(generation, phase=SubmissionPhase.VALIDATING)
        with self._measure("validating"):
            if not self._identity:
                raise PreconditionError("Wallet not connected")
            if not self.session_active:
                raise PreconditionError("No active session")
            record = build(self._identity)
            require_valid(record)

        # Encrypting
        self._update(generation, phase=SubmissionPhase.ENCRYPTING)
        with self._measure("encrypting"):
            payload, commitment = await self._encrypt(generation, record, steps)
        self._payload = payload

        # Proving
        self._update(generation, phase=SubmissionPhase.PROVING)
        with self._measure("proving"):
            verified = await self._offload(
                self.verifier.verify_proof, payload, self.key_manager.public_key)
            self._ensure_current(generation)
            if not verified:
                raise ProofError("Proof failed local verification")

        # Submitting
        self._update(generation, phase=SubmissionPhase.SUBMITTING)
        with self._measure("submitting"):
            outcome = await self._submit(generation, kind, record, payload)

        self._update(generation, phase=SubmissionPhase.SUCCEEDED)
        logger.info(
            f" {kind.name.title()} accepted in tx {shorten(outcome.transaction_hash or '', 18)}")

        return SubmissionReceipt(
            kind=kind,
            payload=payload,
            outcome=outcome,
            proposal_id=record.proposal_id if kind is ProofKind.VOTE else None,
            commitment=commitment
        )

    async def _encrypt(self, generation: int, record, steps: List[str]):
        total = len(steps)

        def advance(index: int):
            progress = 100 if index == total - 1 else round((index + 1) * 100 / total)
            self._update(generation, progress_percent=progress,
                         current_step_label=steps[index])

        # Session keys and per-call nonce
        public_key = self.key_manager.public_key
        nonce = self.engine.fresh_nonce()
        advance(0)

        ciphertext, nonce = await self._offload(
            self.engine.seal_record, record, public_key, nonce)
        self._ensure_current(generation)
        advance(1)

        proof = await self._offload(self.engine.prove, record, public_key, ciphertext)
        self._ensure_current(generation)
        advance(2)

        payload = EncryptedPayload(ciphertext=ciphertext, proof=proof, nonce=nonce)
        commitment = None
        if isinstance(record, VoteRecord):
            commitment = generate_vote_commitment(record, self.engine.random_source)
        advance(3)

        logger.debug(
            f"Encrypted {len(ciphertext)} bytes, proof {len(proof)} bytes")
        return payload, commitment

    async def _submit(self, generation: int, kind: ProofKind, record,
                      payload: EncryptedPayload) -> TransactionOutcome:
        # Last point at which a reset keeps the attempt off the ledger
        self._ensure_current(generation)

        if kind is ProofKind.VOTE:
            call = self.ledger.cast_vote(
                record.proposal_id, payload.ciphertext_hex, payload.proof_hex,
                sender=record.voter_address)
        else:
            call = self.ledger.register_voter(
                payload.ciphertext_hex, payload.proof_hex,
                sender=record.voter_address)

        timeout = self.config.ledger.submission_timeout
        try:
            outcome = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            raise SubmissionError(f"Ledger did not acknowledge within {timeout}s")

        self._ensure_current(generation)
        if not outcome.accepted:
            raise SubmissionError(outcome.reason or "Rejected by ledger")
        return outcome

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """Get attempt counters and per-phase timings"""
        return {
            'attempts': self._attempts,
            'succeeded': self._succeeded,
            'failed': self._failed,
            'session_active': self.session_active,
            'phase': self._state.phase.value,
            'performance': self.performance_monitor.get_summary()
        }

# ============================================================================
# DEMONSTRATION
# ============================================================================


async def demonstrate_confidential_submission():
    """Run a vote and a reputation claim against the in-memory ledger"""
    config = load_config()
    setup_logging(config.log_level)

    print("\n" + "=" * 80)
    print("CONFIDENTIAL SUBMISSION PIPELINE DEMONSTRATION")
    print("=" * 80 + "\n")

    ledger = InMemoryLedgerClient(config=config.ledger)
    pipeline = ConfidentialSubmissionPipeline(config=config, ledger=ledger)

    def render(state: SubmissionState):
        label = f" - {state.current_step_label}" if state.current_step_label else ""
        print(f"  [{state.phase.value:>10}] {state.progress_percent:3d}%{label}")

    pipeline.subscribe(render)

    async with pipeline:
        ledger.expected_public_key = pipeline.key_manager.public_key
        pipeline.connect_identity("0x" + "ab" * 20)

        print("Casting vote on proposal 1...")
        receipt = await pipeline.submit_vote(1, VoteChoice.YES)
        if receipt:
            print(f"  Commitment: {shorten(receipt.commitment.value_hex, 18)}")
            print(f"  Tx: {shorten(receipt.outcome.transaction_hash, 18)}\n")

        print("Casting the same vote again...")
        await pipeline.submit_vote(
            1, VoteChoice.NO, on_error=lambda message: print(f"  Error: {message}\n"))

        pipeline.reset_submission()
        print("Registering reputation 87...")
        await pipeline.submit_reputation(87)

        voter_info = await ledger.get_voter_info(pipeline.identity)
        print(f"\nVoter info: {voter_info}")
        print(f"Registered voters: {await ledger.total_registered_voters()}")

    print("\n" + create_performance_report(pipeline.performance_monitor))


if __name__ == "__main__":
    asyncio.run(demonstrate_confidential_submission())
