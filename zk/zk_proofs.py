"""
Submission Proof System
=======================
Attestations binding an encrypted submission to its submitter and public
shape (proposal id or reputation bounds) without carrying the plaintext.

The proof is a DER-encoded ASN.1 statement:

    SubmissionProof ::= SEQUENCE {
        version           INTEGER,
        kind              INTEGER,       -- 0 vote, 1 reputation
        proposalId        INTEGER,       -- 0 for reputation claims
        rangeLower        INTEGER,
        rangeUpper        INTEGER,
        voter             OCTET STRING,  -- 20-byte address
        timestamp         INTEGER,
        publicKey         OCTET STRING,
        ciphertextDigest  OCTET STRING,  -- SHA-256, empty when unbound
        signature         OCTET STRING   -- fresh random token
    }

Verification is a pure function of (payload, public key); it never needs the
plaintext record. This encoding stands in for a real zero-knowledge backend,
which must honor the same generate/verify contract.
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from pyasn1.codec.der import decoder, encoder
from pyasn1.type import namedtype, univ

from voting.records import (
    ReputationRecord,
    VoteRecord,
    ADDRESS_PREFIX,
    REPUTATION_MIN,
    REPUTATION_MAX,
)

logger = logging.getLogger(__name__)

PROOF_VERSION = 1
SIGNATURE_BYTES = 32
DIGEST_BYTES = 32
VOTE_RANGE = (0, 1)
REPUTATION_RANGE = (REPUTATION_MIN, REPUTATION_MAX)


class ZKError(Exception):
    """Base exception for proof operations"""
    pass


class ProofError(ZKError):
    """Proof construction failed"""
    pass


class ProofKind(Enum):
    """Kinds of submission proofs"""
    VOTE = 0
    REPUTATION = 1


class SubmissionProofASN1(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('version', univ.Integer()),
        namedtype.NamedType('kind', univ.Integer()),
        namedtype.NamedType('proposalId', univ.Integer()),
        namedtype.NamedType('rangeLower', univ.Integer()),
        namedtype.NamedType('rangeUpper', univ.Integer()),
        namedtype.NamedType('voter', univ.OctetString()),
        namedtype.NamedType('timestamp', univ.Integer()),
        namedtype.NamedType('publicKey', univ.OctetString()),
        namedtype.NamedType('ciphertextDigest', univ.OctetString()),
        namedtype.NamedType('signature', univ.OctetString()),
    )


@dataclass(frozen=True)
class ProofStatement:
    """Public statement carried by a proof"""
    version: int
    kind: ProofKind
    proposal_id: int
    range_lower: int
    range_upper: int
    voter_address: str
    timestamp: int
    public_key: bytes
    ciphertext_digest: bytes
    signature: bytes

    @property
    def binds_ciphertext(self) -> bool:
        return len(self.ciphertext_digest) > 0


def _coerce_key(public_key: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(public_key, str):
        if not public_key.startswith(ADDRESS_PREFIX):
            raise ValueError("Hex key must be 0x-prefixed")
        return bytes.fromhex(public_key[len(ADDRESS_PREFIX):])
    return bytes(public_key)


def _address_bytes(address: str) -> bytes:
    return bytes.fromhex(address[len(ADDRESS_PREFIX):])


class ProofGenerator:
    """Builds submission proofs for validated records"""

    def __init__(self, signature_bytes: int = SIGNATURE_BYTES,
                 token_source: Callable[[int], bytes] = secrets.token_bytes):
        self.signature_bytes = signature_bytes
        self._token_source = token_source

    def generate_proof(self, record: Union[VoteRecord, ReputationRecord],
                       public_key: Union[bytes, str],
                       ciphertext: Optional[bytes] = None) -> bytes:
        """Generate proof binding record shape, submitter, key and ciphertext"""
        if isinstance(record, VoteRecord):
            kind = ProofKind.VOTE
            proposal_id = record.proposal_id
            lower, upper = VOTE_RANGE
        elif isinstance(record, ReputationRecord):
            kind = ProofKind.REPUTATION
            proposal_id = 0
            lower, upper = REPUTATION_RANGE
        else:
            raise ProofError(
                f"Cannot prove record of type {type(record).__name__}")

        try:
            key_bytes = _coerce_key(public_key)
            voter = _address_bytes(record.voter_address)
        except (ValueError, TypeError, AttributeError) as e:
            raise ProofError(f"Malformed proof input: {e}")

        digest = hashlib.sha256(
            ciphertext).digest() if ciphertext is not None else b""

        token = self._token_source(self.signature_bytes)
        if len(token) != self.signature_bytes:
            raise ProofError("Signature token source returned short output")

        statement = SubmissionProofASN1()
        statement['version'] = PROOF_VERSION
        statement['kind'] = kind.value
        statement['proposalId'] = proposal_id
        statement['rangeLower'] = lower
        statement['rangeUpper'] = upper
        statement['voter'] = voter
        statement['timestamp'] = record.timestamp
        statement['publicKey'] = key_bytes
        statement['ciphertextDigest'] = digest
        statement['signature'] = token

        try:
            proof = encoder.encode(statement)
        except Exception as e:
            raise ProofError(f"Proof encoding failed: {e}")

        logger.debug(
            f"Generated {kind.name.lower()} proof ({len(proof)} bytes)")
        return proof


class ProofVerifier:
    """Checks proofs against an expected public key; never raises"""

    def __init__(self, signature_bytes: int = SIGNATURE_BYTES):
        self.signature_bytes = signature_bytes

    def extract_statement(self, proof: bytes) -> Optional[ProofStatement]:
        """Decode the public statement of a proof, or None if malformed"""
        try:
            decoded, rest = decoder.decode(
                bytes(proof), asn1Spec=SubmissionProofASN1())
            if rest:
                logger.warning(
                    f"Proof has {len(rest)} trailing bytes, rejecting")
                return None

            voter = decoded['voter'].asOctets()
            if len(voter) != 20:
                return None

            return ProofStatement(
                version=int(decoded['version']),
                kind=ProofKind(int(decoded['kind'])),
                proposal_id=int(decoded['proposalId']),
                range_lower=int(decoded['rangeLower']),
                range_upper=int(decoded['rangeUpper']),
                voter_address=ADDRESS_PREFIX + voter.hex(),
                timestamp=int(decoded['timestamp']),
                public_key=decoded['publicKey'].asOctets(),
                ciphertext_digest=decoded['ciphertextDigest'].asOctets(),
                signature=decoded['signature'].asOctets(),
            )
        except Exception as e:
            logger.debug(f"Proof decode failed: {e}")
            return None

    def verify_proof(self, payload, public_key: Union[bytes, str]) -> bool:
        """Verify payload.proof against the expected public key"""
        try:
            expected_key = _coerce_key(public_key)
            statement = self.extract_statement(payload.proof)
            if statement is None:
                return False

            if statement.version != PROOF_VERSION:
                logger.warning(
                    f"Unsupported proof version {statement.version}")
                return False

            if not hmac.compare_digest(statement.public_key, expected_key):
                logger.warning("Proof public key does not match expected key")
                return False

            if len(statement.signature) != self.signature_bytes:
                return False

            if statement.kind is ProofKind.VOTE:
                if (statement.range_lower, statement.range_upper) != VOTE_RANGE:
                    return False
                if statement.proposal_id <= 0:
                    return False
            elif (statement.range_lower, statement.range_upper) != REPUTATION_RANGE:
                return False
            elif statement.proposal_id != 0:
                return False

            if statement.timestamp <= 0:
                return False

            if statement.binds_ciphertext:
                if len(statement.ciphertext_digest) != DIGEST_BYTES:
                    return False
                actual = hashlib.sha256(bytes(payload.ciphertext)).digest()
                if not hmac.compare_digest(statement.ciphertext_digest, actual):
                    logger.warning("Proof is not bound to this ciphertext")
                    return False

            return True

        except Exception as e:
            logger.error(f"Verification failed: {e}")
            return False


_default_generator = ProofGenerator()
_default_verifier = ProofVerifier()


def generate_proof(record: Union[VoteRecord, ReputationRecord],
                   public_key: Union[bytes, str],
                   ciphertext: Optional[bytes] = None) -> bytes:
    """Generate a proof with the default generator"""
    return _default_generator.generate_proof(record, public_key, ciphertext)


def verify_proof(payload, public_key: Union[bytes, str]) -> bool:
    """Verify a payload's proof with the default verifier"""
    return _default_verifier.verify_proof(payload, public_key)
