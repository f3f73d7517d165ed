#!/usr/bin/env python3
"""
Confidential Payload Encryption
===============================
Session key management, canonical payload codec and the encryption engine
that turns validated vote/reputation records into ciphertext + proof + nonce.

The engine is the unit a homomorphic backend replaces. Two backends ship:

- SealedBoxBackend: X25519 + HKDF-SHA256 + AES-GCM, confidential but not
  homomorphic. Ephemeral key and AEAD nonce are derived from the serialized
  payload, so identical serialized input yields identical ciphertext while
  the fresh per-call nonce inside the payload keeps every submission distinct.
- PlaceholderBackend: the reversible encoding itself, no confidentiality.

Private keys never leave SessionKeyManager except for explicit decryption,
and are never logged.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding, NoEncryption, PrivateFormat, PublicFormat
)

from config.config import EncryptionConfig, ProofConfig
from utils.utils import bytes_to_hex, hex_to_bytes
from voting.records import (
    PreconditionError,
    ReputationRecord,
    VoteChoice,
    VoteRecord,
    require_valid,
)
from zk.zk_proofs import ProofGenerator

logger = logging.getLogger(__name__)

KEY_BYTES = 32
DEFAULT_NONCE_BYTES = 16
AEAD_TAG_BYTES = 16

EPHEMERAL_INFO = b"confidential-voting/v1/ephemeral"
MESSAGE_KEY_INFO = b"confidential-voting/v1/message-key"
COMMITMENT_DOMAIN = b"confidential-voting/v1/commitment"

Record = Union[VoteRecord, ReputationRecord]

# Custom Exceptions


class FHEError(Exception):
    """Base encryption layer error"""
    pass


class EncryptionError(FHEError):
    """Encryption engine failure"""
    pass


class RandomnessUnavailableError(EncryptionError):
    """No cryptographically secure randomness source"""
    pass


class DecodeError(FHEError):
    """Malformed ciphertext or payload"""
    pass

# Randomness


class SecureRandomSource:
    """OS CSPRNG; fails loudly if the platform has none"""
    is_secure = True

    def read(self, num_bytes: int) -> bytes:
        try:
            return os.urandom(num_bytes)
        except NotImplementedError as e:
            raise RandomnessUnavailableError(
                f"No secure randomness source available: {e}")


class InsecureTestRandomSource:
    """
    Deterministic PRNG for reproducible test builds ONLY.

    Never ship this: SessionKeyManager refuses it unless explicitly built
    with allow_insecure=True.
    """
    is_secure = False

    def __init__(self, seed: int = 0):
        self._rng = random.Random(seed)

    def read(self, num_bytes: int) -> bytes:
        return self._rng.randbytes(num_bytes)


def _check_random_source(source, allow_insecure: bool):
    if getattr(source, 'is_secure', False):
        return
    if not allow_insecure:
        raise EncryptionError(
            "Refusing non-secure randomness source outside test builds")
    logger.warning(
        f" INSECURE randomness source in use: {type(source).__name__} (test build only)")

# Data Classes


@dataclass
class KeyPair:
    """Session key pair; private half is wiped on rotation or session end"""
    public_key: bytes
    private_key: bytearray = field(repr=False)
    created_at: float = field(default_factory=time.time)

    @property
    def public_key_hex(self) -> str:
        return bytes_to_hex(self.public_key)

    @property
    def is_wiped(self) -> bool:
        return not any(self.private_key)

    def wipe(self):
        for i in range(len(self.private_key)):
            self.private_key[i] = 0


@dataclass(frozen=True)
class EncryptedPayload:
    """Ciphertext, proof and per-call nonce for one plaintext record"""
    ciphertext: bytes
    proof: bytes
    nonce: bytes

    @property
    def ciphertext_hex(self) -> str:
        return bytes_to_hex(self.ciphertext)

    @property
    def proof_hex(self) -> str:
        return bytes_to_hex(self.proof)

    @property
    def nonce_hex(self) -> str:
        return bytes_to_hex(self.nonce)


@dataclass(frozen=True)
class Commitment:
    """Hiding commitment to a vote, opened with its blinding factor"""
    value: bytes
    blinding: bytes = field(repr=False)

    @property
    def value_hex(self) -> str:
        return bytes_to_hex(self.value)

# Key Management


class SessionKeyManager:
    """Creates, holds, rotates and destroys the session key pair"""

    def __init__(self, random_source=None, allow_insecure: bool = False):
        self.random_source = random_source or SecureRandomSource()
        self.allow_insecure = allow_insecure
        _check_random_source(self.random_source, allow_insecure)
        self._key_pair: Optional[KeyPair] = None

    @property
    def has_key_pair(self) -> bool:
        return self._key_pair is not None

    @property
    def key_pair(self) -> KeyPair:
        if self._key_pair is None:
            raise PreconditionError("No active session key pair")
        return self._key_pair

    @property
    def public_key(self) -> bytes:
        return self.key_pair.public_key

    def generate_key_pair(self) -> KeyPair:
        """Generate the session key pair, rotating any existing one"""
        if not self.random_source.is_secure:
            logger.warning(" Generating session keys from INSECURE randomness")

        seed = self.random_source.read(KEY_BYTES)
        if len(seed) != KEY_BYTES:
            raise RandomnessUnavailableError("Randomness source returned short output")

        private = X25519PrivateKey.from_private_bytes(seed)
        public_raw = private.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw)
        private_raw = bytearray(private.private_bytes(
            Encoding.Raw, PrivateFormat.Raw, NoEncryption()))

        if self._key_pair is not None:
            logger.info("Rotating session key pair")
            self._key_pair.wipe()

        self._key_pair = KeyPair(public_key=public_raw, private_key=private_raw)
        logger.info(f"Session key pair ready: {self._key_pair.public_key_hex[:18]}...")
        return self._key_pair

    def destroy(self):
        """Wipe and drop the session key pair"""
        if self._key_pair is not None:
            self._key_pair.wipe()
            self._key_pair = None
            logger.info("Session key pair destroyed")

# Codec


class PayloadCodec:
    """Canonical JSON + base64 encoding of plaintext payloads"""

    @staticmethod
    def encode(payload: Dict[str, Any]) -> bytes:
        canonical = json.dumps(
            payload, sort_keys=True, separators=(',', ':'), ensure_ascii=False
        ).encode('utf-8')
        return base64.b64encode(canonical)

    @staticmethod
    def decode(data: bytes) -> Dict[str, Any]:
        try:
            raw = base64.b64decode(bytes(data), validate=True)
            payload = json.loads(raw.decode('utf-8'))
        except (ValueError, TypeError) as e:
            raise DecodeError(f"Malformed payload encoding: {e}")

        if not isinstance(payload, dict):
            raise DecodeError("Payload must be a JSON object")
        return payload

    @staticmethod
    def vote_payload(record: VoteRecord, nonce: bytes) -> Dict[str, Any]:
        return {
            'kind': 'vote',
            'proposalId': record.proposal_id,
            'choice': VoteChoice(record.choice).encoding,
            'voter': record.voter_address,
            'timestamp': record.timestamp,
            'nonce': nonce.hex()
        }

    @staticmethod
    def reputation_payload(record: ReputationRecord, nonce: bytes) -> Dict[str, Any]:
        return {
            'kind': 'reputation',
            'reputation': record.value,
            'voter': record.voter_address,
            'timestamp': record.timestamp,
            'nonce': nonce.hex()
        }

    def serialize(self, record: Record, nonce: bytes) -> bytes:
        if isinstance(record, VoteRecord):
            return self.encode(self.vote_payload(record, nonce))
        return self.encode(self.reputation_payload(record, nonce))

    def deserialize(self, data: bytes) -> Tuple[Record, bytes]:
        """Rebuild the record and its embedded nonce"""
        payload = self.decode(data)
        try:
            nonce = bytes.fromhex(payload['nonce'])
            kind = payload['kind']
            if kind == 'vote':
                record = VoteRecord(
                    proposal_id=int(payload['proposalId']),
                    choice=VoteChoice.from_encoding(payload['choice']),
                    voter_address=str(payload['voter']),
                    timestamp=int(payload['timestamp'])
                )
            elif kind == 'reputation':
                record = ReputationRecord(
                    value=int(payload['reputation']),
                    voter_address=str(payload['voter']),
                    timestamp=int(payload['timestamp'])
                )
            else:
                raise DecodeError(f"Unknown payload kind: {kind!r}")
        except (KeyError, ValueError, TypeError) as e:
            raise DecodeError(f"Incomplete payload: {e}")
        return record, nonce

# Backends


def _hkdf(ikm: bytes, salt: bytes, info: bytes, length: int) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info
    ).derive(ikm)


def _raw_public(private: X25519PrivateKey) -> bytes:
    return private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


class PlaceholderBackend:
    """Reversible encoding only; offers no confidentiality"""
    name = "placeholder"
    confidential = False

    def seal(self, serialized: bytes, public_key: bytes) -> bytes:
        return bytes(serialized)

    def open(self, ciphertext: bytes, private_key: bytes) -> bytes:
        return bytes(ciphertext)


class SealedBoxBackend:
    """X25519 sealed box: ephemeral_public(32) || AES-GCM(ciphertext || tag)"""
    name = "sealed"
    confidential = True

    def _message_key(self, shared: bytes, ephemeral_public: bytes,
                     recipient_public: bytes) -> Tuple[bytes, bytes]:
        okm = _hkdf(shared, ephemeral_public + recipient_public,
                    MESSAGE_KEY_INFO, 32 + 12)
        return okm[:32], okm[32:]

    def seal(self, serialized: bytes, public_key: bytes) -> bytes:
        recipient = X25519PublicKey.from_public_bytes(bytes(public_key))

        ephemeral = X25519PrivateKey.from_private_bytes(
            _hkdf(serialized, bytes(public_key), EPHEMERAL_INFO, KEY_BYTES))
        ephemeral_public = _raw_public(ephemeral)

        shared = ephemeral.exchange(recipient)
        key, aead_nonce = self._message_key(
            shared, ephemeral_public, bytes(public_key))

        return ephemeral_public + AESGCM(key).encrypt(
            aead_nonce, serialized, ephemeral_public)

    def open(self, ciphertext: bytes, private_key: bytes) -> bytes:
        ciphertext = bytes(ciphertext)
        if len(ciphertext) < KEY_BYTES + AEAD_TAG_BYTES:
            raise DecodeError("Ciphertext too short")

        ephemeral_public = ciphertext[:KEY_BYTES]
        try:
            private = X25519PrivateKey.from_private_bytes(bytes(private_key))
            shared = private.exchange(
                X25519PublicKey.from_public_bytes(ephemeral_public))
            key, aead_nonce = self._message_key(
                shared, ephemeral_public, _raw_public(private))
            return AESGCM(key).decrypt(
                aead_nonce, ciphertext[KEY_BYTES:], ephemeral_public)
        except InvalidTag:
            raise DecodeError("Ciphertext authentication failed")
        except ValueError as e:
            raise DecodeError(f"Malformed ciphertext: {e}")


def create_backend(name: str):
    """Create encryption backend by configured name"""
    if name == SealedBoxBackend.name:
        return SealedBoxBackend()
    if name == PlaceholderBackend.name:
        logger.warning(" Placeholder backend selected: ciphertexts are NOT confidential")
        return PlaceholderBackend()
    raise EncryptionError(f"Unknown encryption backend: {name}")


def _coerce_key(key: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(key, str):
        return hex_to_bytes(key)
    return bytes(key)

# Encryption Engine


class FHEEncryptionEngine:
    """Turns validated records into EncryptedPayloads under a public key"""

    def __init__(self, backend=None, codec: Optional[PayloadCodec] = None,
                 prover: Optional[ProofGenerator] = None, random_source=None,
                 nonce_bytes: int = DEFAULT_NONCE_BYTES, bind_ciphertext: bool = True,
                 allow_insecure: bool = False):
        self.backend = backend or SealedBoxBackend()
        self.codec = codec or PayloadCodec()
        self.prover = prover or ProofGenerator()
        self.random_source = random_source or SecureRandomSource()
        self.nonce_bytes = nonce_bytes
        self.bind_ciphertext = bind_ciphertext
        _check_random_source(self.random_source, allow_insecure)

    @classmethod
    def from_config(cls, encryption: EncryptionConfig,
                    proof: Optional[ProofConfig] = None,
                    random_source=None) -> 'FHEEncryptionEngine':
        proof = proof or ProofConfig()
        return cls(
            backend=create_backend(encryption.backend),
            prover=ProofGenerator(signature_bytes=proof.signature_bytes),
            random_source=random_source,
            nonce_bytes=encryption.nonce_bytes,
            bind_ciphertext=proof.bind_ciphertext,
            allow_insecure=encryption.allow_insecure_test_randomness
        )

    def fresh_nonce(self) -> bytes:
        if not self.random_source.is_secure:
            logger.warning(" Drawing payload nonce from INSECURE randomness")
        nonce = self.random_source.read(self.nonce_bytes)
        if len(nonce) != self.nonce_bytes:
            raise RandomnessUnavailableError("Randomness source returned short output")
        return nonce

    def seal_record(self, record: Record, public_key: Union[bytes, str],
                    nonce: Optional[bytes] = None) -> Tuple[bytes, bytes]:
        """Serialize with a fresh nonce and seal; returns (ciphertext, nonce)"""
        require_valid(record)
        if nonce is None:
            nonce = self.fresh_nonce()
        elif len(nonce) != self.nonce_bytes:
            raise EncryptionError(f"Nonce must be {self.nonce_bytes} bytes")
        serialized = self.codec.serialize(record, nonce)
        try:
            ciphertext = self.backend.seal(serialized, _coerce_key(public_key))
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Backend {self.backend.name} failed: {e}")
        return ciphertext, nonce

    def prove(self, record: Record, public_key: Union[bytes, str],
              ciphertext: bytes) -> bytes:
        """Generate the proof for an already sealed record"""
        return self.prover.generate_proof(
            record, _coerce_key(public_key),
            ciphertext if self.bind_ciphertext else None)

    def encrypt(self, record: Record, public_key: Union[bytes, str]) -> EncryptedPayload:
        """Encrypt a validated record and attach its proof"""
        ciphertext, nonce = self.seal_record(record, public_key)
        proof = self.prove(record, public_key, ciphertext)
        return EncryptedPayload(ciphertext=ciphertext, proof=proof, nonce=nonce)

    def decrypt(self, payload: EncryptedPayload,
                private_key: Union[bytes, bytearray, str]) -> Record:
        """Recover the plaintext record; raises DecodeError"""
        try:
            serialized = self.backend.open(
                payload.ciphertext, _coerce_key(private_key))
        except (ValueError, TypeError) as e:
            raise DecodeError(f"Could not open ciphertext: {e}")

        record, nonce = self.codec.deserialize(serialized)
        if not hmac.compare_digest(nonce, bytes(payload.nonce)):
            raise DecodeError("Embedded nonce does not match payload nonce")
        return record

    def decrypt_vote(self, payload: EncryptedPayload,
                     private_key: Union[bytes, bytearray, str]) -> Optional[VoteRecord]:
        """Decrypt a vote; returns None on any failure"""
        try:
            record = self.decrypt(payload, private_key)
        except (DecodeError, AttributeError) as e:
            logger.error(f"Decryption failed: {e}")
            return None
        return record if isinstance(record, VoteRecord) else None

    def decrypt_reputation(self, payload: EncryptedPayload,
                           private_key: Union[bytes, bytearray, str]) -> Optional[ReputationRecord]:
        """Decrypt a reputation claim; returns None on any failure"""
        try:
            record = self.decrypt(payload, private_key)
        except (DecodeError, AttributeError) as e:
            logger.error(f"Decryption failed: {e}")
            return None
        return record if isinstance(record, ReputationRecord) else None

# Commitments


def _commitment_digest(record: VoteRecord, blinding: bytes) -> bytes:
    canonical = json.dumps({
        'proposalId': record.proposal_id,
        'choice': VoteChoice(record.choice).encoding,
        'voter': record.voter_address,
        'timestamp': record.timestamp
    }, sort_keys=True, separators=(',', ':')).encode('utf-8')
    return hashlib.sha256(COMMITMENT_DOMAIN + canonical + blinding).digest()


def generate_vote_commitment(record: VoteRecord, random_source=None) -> Commitment:
    """Commit to a vote without revealing it"""
    require_valid(record)
    blinding = (random_source or SecureRandomSource()).read(32)
    return Commitment(value=_commitment_digest(record, blinding), blinding=blinding)


def verify_vote_commitment(record: VoteRecord, commitment: Commitment) -> bool:
    """Open a commitment against a claimed vote"""
    try:
        expected = _commitment_digest(record, commitment.blinding)
    except (ValueError, TypeError, AttributeError):
        return False
    return hmac.compare_digest(expected, commitment.value)
