"""Plaintext vote/reputation records and their validators."""

from .records import (
    # Data structures
    VoteChoice,
    VoteRecord,
    ReputationRecord,

    # Validation
    validate_vote,
    validate_reputation,
    is_valid_address,
    require_valid,

    # Constants
    ADDRESS_PREFIX,
    ADDRESS_LENGTH,
    REPUTATION_MIN,
    REPUTATION_MAX,

    # Exceptions
    VotingError,
    PreconditionError,
    ValidationError,
)

__all__ = [
    'VoteChoice',
    'VoteRecord',
    'ReputationRecord',
    'validate_vote',
    'validate_reputation',
    'is_valid_address',
    'require_valid',
    'ADDRESS_PREFIX',
    'ADDRESS_LENGTH',
    'REPUTATION_MIN',
    'REPUTATION_MAX',
    'VotingError',
    'PreconditionError',
    'ValidationError',
]
