#!/usr/bin/env python3
"""
Ledger Client
=============
Outbound boundary of the submission pipeline. Encrypted payloads leave the
process only as strongly-typed calls whose hex fields are validated before
any ledger interaction.

Two clients ship:

- InMemoryLedgerClient: contract simulation for tests and demos
- JsonRpcLedgerClient: Ethereum JSON-RPC with Solidity ABI call data
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import requests
from Crypto.Hash import keccak

from config.config import LedgerConfig
from utils.utils import HEX_PREFIX, bytes_to_hex, compute_hash, hex_to_bytes, shorten
from voting.records import is_valid_address
from zk.zk_proofs import ProofKind, ProofStatement, ProofVerifier

logger = logging.getLogger(__name__)

UINT256_MAX = 2 ** 256 - 1
WORD_BYTES = 32
DEFAULT_MAX_FIELD_BYTES = 4096


class LedgerError(Exception):
    """Base ledger client error"""
    pass


class SubmissionError(LedgerError):
    """Ledger call could not be made or was not acknowledged"""
    pass

# Data Classes


@dataclass(frozen=True)
class TransactionOutcome:
    """Ledger acknowledgement of a submitted call"""
    accepted: bool
    transaction_hash: Optional[str] = None
    reason: Optional[str] = None
    block_number: Optional[int] = None


@dataclass(frozen=True)
class VoterInfo:
    """Result of getVoterInfo(address) -> (uint8, uint8, bool, bool)"""
    reputation: int
    vote_count: int
    is_registered: bool
    is_active: bool


def _check_hex_field(name: str, value: Any, max_bytes: int) -> bytes:
    if not isinstance(value, str):
        raise SubmissionError(f"{name} must be a hex string")
    try:
        data = hex_to_bytes(value)
    except ValueError as e:
        raise SubmissionError(f"Malformed {name}: {e}")
    if not data:
        raise SubmissionError(f"{name} is empty")
    if len(data) > max_bytes:
        raise SubmissionError(
            f"{name} exceeds {max_bytes} bytes ({len(data)})")
    return data


@dataclass(frozen=True)
class RegisterVoterCall:
    """registerVoter(bytes encryptedReputation, bytes proof)"""
    ciphertext_hex: str
    proof_hex: str
    max_ciphertext_bytes: int = field(
        default=DEFAULT_MAX_FIELD_BYTES, repr=False, compare=False)
    max_proof_bytes: int = field(
        default=DEFAULT_MAX_FIELD_BYTES, repr=False, compare=False)

    def __post_init__(self):
        _check_hex_field("ciphertext", self.ciphertext_hex, self.max_ciphertext_bytes)
        _check_hex_field("proof", self.proof_hex, self.max_proof_bytes)
        object.__setattr__(self, 'ciphertext_hex', self.ciphertext_hex.lower())
        object.__setattr__(self, 'proof_hex', self.proof_hex.lower())

    @property
    def ciphertext(self) -> bytes:
        return hex_to_bytes(self.ciphertext_hex)

    @property
    def proof(self) -> bytes:
        return hex_to_bytes(self.proof_hex)


@dataclass(frozen=True)
class CastVoteCall(RegisterVoterCall):
    """castVote(uint256 proposalId, bytes encryptedVote, bytes proof)"""
    proposal_id: int = 0

    def __post_init__(self):
        if isinstance(self.proposal_id, bool) or not isinstance(self.proposal_id, int):
            raise SubmissionError("Proposal id must be an integer")
        if not 0 < self.proposal_id <= UINT256_MAX:
            raise SubmissionError(
                f"Proposal id out of uint256 range: {self.proposal_id}")
        super().__post_init__()

    @property
    def proposal_id_word(self) -> str:
        """Proposal id as a 32-byte big-endian hex field"""
        return bytes_to_hex(self.proposal_id.to_bytes(WORD_BYTES, 'big'))

# ABI helpers


def function_selector(signature: str) -> bytes:
    """First 4 bytes of keccak256(signature)"""
    digest = keccak.new(digest_bits=256)
    digest.update(signature.encode('ascii'))
    return digest.digest()[:4]


def _uint_word(value: int) -> bytes:
    return int(value).to_bytes(WORD_BYTES, 'big')


def _address_word(address: str) -> bytes:
    return hex_to_bytes(address).rjust(WORD_BYTES, b'\x00')


def _encode_dynamic(data: bytes) -> bytes:
    padding = (-len(data)) % WORD_BYTES
    return _uint_word(len(data)) + data + b'\x00' * padding


def encode_call(signature: str, static: List[bytes], dynamic: List[bytes]) -> bytes:
    """
    Encode Solidity call data. Static words come first in the head; each
    dynamic bytes argument follows as a head offset and a tail entry.
    """
    head_size = WORD_BYTES * (len(static) + len(dynamic))
    head = list(static)
    tail = b''
    for data in dynamic:
        head.append(_uint_word(head_size + len(tail)))
        tail += _encode_dynamic(data)
    return function_selector(signature) + b''.join(head) + tail


def decode_words(result: str, count: int) -> List[int]:
    """Split an eth_call result into uint words"""
    data = hex_to_bytes(result)
    if len(data) < WORD_BYTES * count:
        raise SubmissionError(f"Short eth_call result ({len(data)} bytes)")
    return [int.from_bytes(data[i * WORD_BYTES:(i + 1) * WORD_BYTES], 'big')
            for i in range(count)]

# Clients


class LedgerClient(ABC):
    """Call contract of the external ledger"""

    @abstractmethod
    async def cast_vote(self, proposal_id: int, ciphertext_hex: str, proof_hex: str,
                        sender: Optional[str] = None) -> TransactionOutcome:
        pass

    @abstractmethod
    async def register_voter(self, ciphertext_hex: str, proof_hex: str,
                             sender: Optional[str] = None) -> TransactionOutcome:
        pass

    @abstractmethod
    async def check_voting_eligibility(self, address: str, proposal_id: int) -> bool:
        pass

    @abstractmethod
    async def get_voter_info(self, address: str) -> VoterInfo:
        pass

    @abstractmethod
    async def total_registered_voters(self) -> int:
        pass


class InMemoryLedgerClient(LedgerClient):
    """
    Contract simulation.

    Verifies proofs, rejects a second vote by the same voter on the same
    proposal and tracks registrations. `reject_reason` makes every write
    fail; `stall` makes every write hang until cancelled.
    """

    def __init__(self, expected_public_key: Optional[bytes] = None,
                 config: Optional[LedgerConfig] = None,
                 verifier: Optional[ProofVerifier] = None,
                 require_registration: bool = False,
                 latency: float = 0.0):
        self.config = config or LedgerConfig()
        self.expected_public_key = expected_public_key
        self.verifier = verifier or ProofVerifier()
        self.require_registration = require_registration
        self.latency = latency

        self.reject_reason: Optional[str] = None
        self.stall = False

        self.calls: List[RegisterVoterCall] = []
        self._votes: Dict[Tuple[str, int], str] = {}
        self._vote_counts: Dict[str, int] = {}
        self._registered: Set[str] = set()
        self._block_number = 0

    async def _acknowledge(self):
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.stall:
            logger.warning("Ledger stalled, call will not be acknowledged")
            await asyncio.get_running_loop().create_future()

    def _check_proof(self, call: RegisterVoterCall, kind: ProofKind,
                     sender: Optional[str]) -> Union[str, ProofStatement]:
        statement = self.verifier.extract_statement(call.proof)
        if statement is None:
            return "Malformed proof"

        key = self.expected_public_key or statement.public_key
        if not self.verifier.verify_proof(call, key):
            return "Invalid proof"
        if statement.kind is not kind:
            return f"Expected {kind.name.lower()} proof"
        if sender is not None and sender.lower() != statement.voter_address:
            return "Proof submitter does not match sender"
        return statement

    def _accept(self, call: RegisterVoterCall) -> TransactionOutcome:
        self._block_number += 1
        tx_hash = compute_hash(
            _uint_word(self._block_number) + call.ciphertext + call.proof)
        self.calls.append(call)
        return TransactionOutcome(accepted=True, transaction_hash=tx_hash,
                                  block_number=self._block_number)

    def _reject(self, reason: str) -> TransactionOutcome:
        logger.warning(f"Ledger rejected call: {reason}")
        return TransactionOutcome(accepted=False, reason=reason)

    async def cast_vote(self, proposal_id: int, ciphertext_hex: str, proof_hex: str,
                        sender: Optional[str] = None) -> TransactionOutcome:
        call = CastVoteCall(
            ciphertext_hex=ciphertext_hex,
            proof_hex=proof_hex,
            proposal_id=proposal_id,
            max_ciphertext_bytes=self.config.max_ciphertext_bytes,
            max_proof_bytes=self.config.max_proof_bytes
        )
        await self._acknowledge()

        if self.reject_reason:
            return self._reject(self.reject_reason)

        statement = self._check_proof(call, ProofKind.VOTE, sender)
        if isinstance(statement, str):
            return self._reject(statement)
        if statement.proposal_id != call.proposal_id:
            return self._reject("Proof does not match proposal")

        voter = statement.voter_address
        if self.require_registration and voter not in self._registered:
            return self._reject("Voter is not registered")
        if (voter, call.proposal_id) in self._votes:
            return self._reject("Voter has already voted on this proposal")

        outcome = self._accept(call)
        self._votes[(voter, call.proposal_id)] = outcome.transaction_hash
        self._vote_counts[voter] = self._vote_counts.get(voter, 0) + 1
        logger.info(
            f"Vote recorded for proposal {call.proposal_id} in block {outcome.block_number}")
        return outcome

    async def register_voter(self, ciphertext_hex: str, proof_hex: str,
                             sender: Optional[str] = None) -> TransactionOutcome:
        call = RegisterVoterCall(
            ciphertext_hex=ciphertext_hex,
            proof_hex=proof_hex,
            max_ciphertext_bytes=self.config.max_ciphertext_bytes,
            max_proof_bytes=self.config.max_proof_bytes
        )
        await self._acknowledge()

        if self.reject_reason:
            return self._reject(self.reject_reason)

        statement = self._check_proof(call, ProofKind.REPUTATION, sender)
        if isinstance(statement, str):
            return self._reject(statement)
        if statement.voter_address in self._registered:
            return self._reject("Voter already registered")

        outcome = self._accept(call)
        self._registered.add(statement.voter_address)
        logger.info(f"Voter {shorten(statement.voter_address)} registered")
        return outcome

    async def check_voting_eligibility(self, address: str, proposal_id: int) -> bool:
        address = address.lower()
        if self.require_registration and address not in self._registered:
            return False
        return (address, proposal_id) not in self._votes

    async def get_voter_info(self, address: str) -> VoterInfo:
        address = address.lower()
        registered = address in self._registered
        # Reputation stays encrypted on the simulated ledger
        return VoterInfo(
            reputation=0,
            vote_count=self._vote_counts.get(address, 0),
            is_registered=registered,
            is_active=registered or not self.require_registration
        )

    async def total_registered_voters(self) -> int:
        return len(self._registered)


class JsonRpcLedgerClient(LedgerClient):
    """Ethereum JSON-RPC client for the voting contract"""

    CAST_VOTE = "castVote(uint256,bytes,bytes)"
    REGISTER_VOTER = "registerVoter(bytes,bytes)"
    CHECK_ELIGIBILITY = "checkVotingEligibility(address,uint256)"
    GET_VOTER_INFO = "getVoterInfo(address)"
    TOTAL_REGISTERED = "totalRegisteredVoters()"

    def __init__(self, config: Optional[LedgerConfig] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or LedgerConfig()
        self.session = session or requests.Session()
        self._request_id = 0

    def _rpc(self, method: str, params: list) -> Any:
        self._request_id += 1
        body = {
            'jsonrpc': '2.0',
            'id': self._request_id,
            'method': method,
            'params': params
        }
        try:
            response = self.session.post(
                self.config.rpc_url, json=body, timeout=self.config.request_timeout)
            response.raise_for_status()
            reply = response.json()
        except requests.RequestException as e:
            raise SubmissionError(f"RPC transport error on {method}: {e}")
        except ValueError as e:
            raise SubmissionError(f"RPC returned invalid JSON on {method}: {e}")

        if 'error' in reply:
            error = reply['error']
            message = error.get('message', error) if isinstance(error, dict) else error
            raise SubmissionError(f"RPC error on {method}: {message}")
        return reply.get('result')

    async def _call_rpc(self, method: str, params: list) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._rpc, method, params)

    async def _transact(self, data: bytes, sender: Optional[str]) -> TransactionOutcome:
        if not is_valid_address(sender):
            raise SubmissionError("A valid sender address is required")

        tx = {
            'from': sender,
            'to': self.config.contract_address,
            'data': bytes_to_hex(data),
            'gas': hex(self.config.gas_limit),
            'chainId': hex(self.config.chain_id)
        }
        tx_hash = await self._call_rpc('eth_sendTransaction', [tx])
        if not isinstance(tx_hash, str) or not tx_hash.startswith(HEX_PREFIX):
            raise SubmissionError(f"Unexpected transaction hash: {tx_hash!r}")
        logger.info(f"Transaction sent: {shorten(tx_hash, 18)}")

        deadline = time.monotonic() + self.config.submission_timeout
        while time.monotonic() < deadline:
            receipt = await self._call_rpc('eth_getTransactionReceipt', [tx_hash])
            if receipt:
                try:
                    block = receipt.get('blockNumber')
                    block_number = int(block, 16) if block else None
                    status = receipt.get('status')
                except (ValueError, TypeError, AttributeError) as e:
                    raise SubmissionError(f"Malformed receipt for {shorten(tx_hash, 18)}: {e}")
                if status == '0x1':
                    return TransactionOutcome(accepted=True, transaction_hash=tx_hash,
                                              block_number=block_number)
                return TransactionOutcome(accepted=False, transaction_hash=tx_hash,
                                          reason="Transaction reverted",
                                          block_number=block_number)
            await asyncio.sleep(self.config.receipt_poll_interval)

        raise SubmissionError(
            f"No receipt for {shorten(tx_hash, 18)} within {self.config.submission_timeout}s")

    async def _read(self, data: bytes) -> str:
        result = await self._call_rpc('eth_call', [{
            'to': self.config.contract_address,
            'data': bytes_to_hex(data)
        }, 'latest'])
        if not isinstance(result, str):
            raise SubmissionError(f"Unexpected eth_call result: {result!r}")
        return result

    async def cast_vote(self, proposal_id: int, ciphertext_hex: str, proof_hex: str,
                        sender: Optional[str] = None) -> TransactionOutcome:
        call = CastVoteCall(
            ciphertext_hex=ciphertext_hex,
            proof_hex=proof_hex,
            proposal_id=proposal_id,
            max_ciphertext_bytes=self.config.max_ciphertext_bytes,
            max_proof_bytes=self.config.max_proof_bytes
        )
        data = encode_call(self.CAST_VOTE,
                           [hex_to_bytes(call.proposal_id_word)],
                           [call.ciphertext, call.proof])
        return await self._transact(data, sender)

    async def register_voter(self, ciphertext_hex: str, proof_hex: str,
                             sender: Optional[str] = None) -> TransactionOutcome:
        call = RegisterVoterCall(
            ciphertext_hex=ciphertext_hex,
            proof_hex=proof_hex,
            max_ciphertext_bytes=self.config.max_ciphertext_bytes,
            max_proof_bytes=self.config.max_proof_bytes
        )
        data = encode_call(self.REGISTER_VOTER, [], [call.ciphertext, call.proof])
        return await self._transact(data, sender)

    async def check_voting_eligibility(self, address: str, proposal_id: int) -> bool:
        if not is_valid_address(address):
            raise SubmissionError(f"Invalid address: {address!r}")
        data = encode_call(self.CHECK_ELIGIBILITY,
                           [_address_word(address), _uint_word(proposal_id)], [])
        (eligible,) = decode_words(await self._read(data), 1)
        return eligible != 0

    async def get_voter_info(self, address: str) -> VoterInfo:
        if not is_valid_address(address):
            raise SubmissionError(f"Invalid address: {address!r}")
        data = encode_call(self.GET_VOTER_INFO, [_address_word(address)], [])
        reputation, vote_count, registered, active = decode_words(
            await self._read(data), 4)
        return VoterInfo(reputation=reputation, vote_count=vote_count,
                         is_registered=registered != 0, is_active=active != 0)

    async def total_registered_voters(self) -> int:
        data = encode_call(self.TOTAL_REGISTERED, [], [])
        (total,) = decode_words(await self._read(data), 1)
        return total
