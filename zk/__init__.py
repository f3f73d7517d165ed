"""
Proof Module for the Confidential Submission Pipeline
DER-encoded submission attestations with fail-closed verification
"""

from .zk_proofs import (
    # Core classes
    ProofGenerator,
    ProofVerifier,
    ProofStatement,
    ProofKind,

    # Convenience functions
    generate_proof,
    verify_proof,

    # Constants
    PROOF_VERSION,
    SIGNATURE_BYTES,

    # Exceptions
    ZKError,
    ProofError,
)

__all__ = [
    # Classes
    'ProofGenerator',
    'ProofVerifier',
    'ProofStatement',
    'ProofKind',

    # Functions
    'generate_proof',
    'verify_proof',

    # Constants
    'PROOF_VERSION',
    'SIGNATURE_BYTES',

    # Exceptions
    'ZKError',
    'ProofError',
]
