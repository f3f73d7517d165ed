"""Session keys, payload codec and encryption engine for confidential submissions."""

from .fhe_crypto import (
    # Engine and backends
    FHEEncryptionEngine,
    SealedBoxBackend,
    PlaceholderBackend,
    create_backend,

    # Keys and randomness
    SessionKeyManager,
    KeyPair,
    SecureRandomSource,
    InsecureTestRandomSource,

    # Codec and data structures
    PayloadCodec,
    EncryptedPayload,
    Commitment,

    # Commitments
    generate_vote_commitment,
    verify_vote_commitment,

    # Exceptions
    FHEError,
    EncryptionError,
    RandomnessUnavailableError,
    DecodeError,
)

__all__ = [
    'FHEEncryptionEngine',
    'SealedBoxBackend',
    'PlaceholderBackend',
    'create_backend',
    'SessionKeyManager',
    'KeyPair',
    'SecureRandomSource',
    'InsecureTestRandomSource',
    'PayloadCodec',
    'EncryptedPayload',
    'Commitment',
    'generate_vote_commitment',
    'verify_vote_commitment',
    'FHEError',
    'EncryptionError',
    'RandomnessUnavailableError',
    'DecodeError',
]
