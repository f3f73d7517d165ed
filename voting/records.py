"""
Vote and Reputation Records
===========================
Immutable plaintext records submitted through the confidential pipeline and
the pure validation predicates that gate them before any cryptographic work.
"""

import logging
import string
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

ADDRESS_PREFIX = "0x"
ADDRESS_BYTES = 20
ADDRESS_LENGTH = len(ADDRESS_PREFIX) + ADDRESS_BYTES * 2  # 42

REPUTATION_MIN = 0
REPUTATION_MAX = 100

_HEX_DIGITS = set(string.hexdigits)


class VotingError(Exception):
    """Base error for record handling"""
    pass


class PreconditionError(VotingError):
    """Session or identity precondition not met"""
    pass


class ValidationError(VotingError):
    """Record failed structural or domain validation"""
    pass


class VoteChoice(str, Enum):
    """Binary vote choice with its canonical integer encoding"""
    YES = "yes"
    NO = "no"

    @property
    def encoding(self) -> int:
        return 1 if self is VoteChoice.YES else 0

    @classmethod
    def from_encoding(cls, value: int) -> "VoteChoice":
        if value == 1:
            return cls.YES
        if value == 0:
            return cls.NO
        raise ValueError(f"Unknown vote encoding: {value!r}")


@dataclass(frozen=True)
class VoteRecord:
    """Plaintext vote, never exposed on the ledger"""
    proposal_id: int
    choice: VoteChoice
    voter_address: str
    timestamp: int


@dataclass(frozen=True)
class ReputationRecord:
    """Plaintext reputation claim in [0, 100]"""
    value: int
    voter_address: str
    timestamp: int


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def is_valid_address(address: Any) -> bool:
    """Check canonical 0x-prefixed 20-byte hex address"""
    return (
        isinstance(address, str) and
        len(address) == ADDRESS_LENGTH and
        address.startswith(ADDRESS_PREFIX) and
        all(c in _HEX_DIGITS for c in address[len(ADDRESS_PREFIX):])
    )


def _is_valid_choice(choice: Any) -> bool:
    try:
        return VoteChoice(choice) in (VoteChoice.YES, VoteChoice.NO)
    except (ValueError, TypeError):
        return False


def validate_vote(record: VoteRecord) -> bool:
    """Validate that vote record is properly formed"""
    return (
        _is_int(record.proposal_id) and record.proposal_id > 0 and
        _is_valid_choice(record.choice) and
        is_valid_address(record.voter_address) and
        _is_int(record.timestamp) and record.timestamp > 0
    )


def validate_reputation(record: ReputationRecord) -> bool:
    """Validate that reputation record is properly formed"""
    return (
        _is_int(record.value) and
        REPUTATION_MIN <= record.value <= REPUTATION_MAX and
        is_valid_address(record.voter_address) and
        _is_int(record.timestamp) and record.timestamp > 0
    )


def require_valid(record) -> None:
    """Raise ValidationError unless record passes its validator"""
    if isinstance(record, VoteRecord):
        if not validate_vote(record):
            raise ValidationError("Invalid vote data")
    elif isinstance(record, ReputationRecord):
        if not validate_reputation(record):
            raise ValidationError("Invalid reputation data")
    else:
        raise ValidationError(
            f"Unsupported record type: {type(record).__name__}")
