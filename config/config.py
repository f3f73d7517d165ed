from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List
import logging
import os

import yaml

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "00" * 20
SEPOLIA_CHAIN_ID = 11155111

DEFAULT_VOTE_STEPS = [
    "Generating encryption keys...",
    "Encrypting vote data...",
    "Generating zero-knowledge proof...",
    "Finalizing encryption...",
]

DEFAULT_REPUTATION_STEPS = [
    "Validating reputation data...",
    "Encrypting with FHE...",
    "Generating proof of reputation...",
    "Finalizing encryption...",
]

SUPPORTED_BACKENDS = ("sealed", "placeholder")


@dataclass
class EncryptionConfig:
    backend: str = "sealed"
    nonce_bytes: int = 16
    allow_insecure_test_randomness: bool = False

    def __post_init__(self):
        if self.backend not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unknown encryption backend {self.backend!r}, expected one of {SUPPORTED_BACKENDS}")
        if self.nonce_bytes < 12:
            raise ValueError("Nonce must be at least 12 bytes")


@dataclass
class ProofConfig:
    signature_bytes: int = 32
    bind_ciphertext: bool = True

    def __post_init__(self):
        if self.signature_bytes <= 0:
            raise ValueError("Signature token length must be positive")


@dataclass
class LedgerConfig:
    rpc_url: str = field(default_factory=lambda: os.environ.get(
        'VOTING_RPC_URL', 'http://127.0.0.1:8545'))
    chain_id: int = field(default_factory=lambda: int(
        os.environ.get('VOTING_CHAIN_ID', str(SEPOLIA_CHAIN_ID))))
    contract_address: str = field(default_factory=lambda: os.environ.get(
        'VOTING_CONTRACT_ADDRESS', ZERO_ADDRESS))
    submission_timeout: float = 60.0
    receipt_poll_interval: float = 1.0
    request_timeout: float = 10.0
    gas_limit: int = 2_000_000
    max_ciphertext_bytes: int = 4096
    max_proof_bytes: int = 4096

    def __post_init__(self):
        if self.submission_timeout <= 0:
            raise ValueError("Submission timeout must be positive")
        if self.receipt_poll_interval <= 0:
            raise ValueError("Receipt poll interval must be positive")
        if not (isinstance(self.contract_address, str) and
                self.contract_address.startswith("0x") and
                len(self.contract_address) == 42):
            raise ValueError(
                f"Invalid contract address: {self.contract_address!r}")


@dataclass
class PipelineConfig:
    vote_steps: List[str] = field(
        default_factory=lambda: list(DEFAULT_VOTE_STEPS))
    reputation_steps: List[str] = field(
        default_factory=lambda: list(DEFAULT_REPUTATION_STEPS))

    def __post_init__(self):
        # Work is bound to step index: keys, encrypt, prove, finalize
        for name, steps in (("vote_steps", self.vote_steps),
                            ("reputation_steps", self.reputation_steps)):
            if len(steps) != 4:
                raise ValueError(f"{name} must define exactly 4 step labels")


@dataclass
class SystemConfig:
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    proof: ProofConfig = field(default_factory=ProofConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    log_level: str = field(default_factory=lambda: os.environ.get(
        'VOTING_LOG_LEVEL', 'INFO'))
    enable_metrics: bool = True

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        if not isinstance(getattr(logging, self.log_level.upper(), None), int):
            raise ValueError(f"Invalid log level: {self.log_level!r}")


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config_data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return section


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from YAML file or return defaults"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if not config_path.exists():
        logger.debug(f"No config file at {config_path}, using defaults")
        return SystemConfig()

    with open(config_path, 'r') as f:
        try:
            config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Could not parse config file {config_path}: {e}")

    if not isinstance(config_data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    enc_data = _section(config_data, 'encryption')
    proof_data = _section(config_data, 'proof')
    ledger_data = _section(config_data, 'ledger')
    pipeline_data = _section(config_data, 'pipeline')

    try:
        encryption = EncryptionConfig(**enc_data)
        proof = ProofConfig(**proof_data)
        ledger = LedgerConfig(**ledger_data)
        pipeline = PipelineConfig(**pipeline_data)
    except TypeError as e:
        raise ValueError(f"Unknown key in config file {config_path}: {e}")

    # Environment wins over file for deployment-specific ledger settings
    if 'VOTING_RPC_URL' in os.environ:
        ledger.rpc_url = os.environ['VOTING_RPC_URL']
    if 'VOTING_CHAIN_ID' in os.environ:
        ledger.chain_id = int(os.environ['VOTING_CHAIN_ID'])
    if 'VOTING_CONTRACT_ADDRESS' in os.environ:
        ledger.contract_address = os.environ['VOTING_CONTRACT_ADDRESS']

    config = SystemConfig(
        encryption=encryption,
        proof=proof,
        ledger=ledger,
        pipeline=pipeline,
        log_dir=Path(config_data.get('log_dir', 'logs')),
        log_level=os.environ.get(
            'VOTING_LOG_LEVEL', config_data.get('log_level', 'INFO')),
        enable_metrics=config_data.get('enable_metrics', True)
    )
    logger.info(f"Loaded configuration from {config_path}")
    return config


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = Path("config.yaml")

    config_data = {
        'encryption': {
            'backend': config.encryption.backend,
            'nonce_bytes': config.encryption.nonce_bytes,
            'allow_insecure_test_randomness': config.encryption.allow_insecure_test_randomness
        },
        'proof': {
            'signature_bytes': config.proof.signature_bytes,
            'bind_ciphertext': config.proof.bind_ciphertext
        },
        'ledger': {
            'rpc_url': config.ledger.rpc_url,
            'chain_id': config.ledger.chain_id,
            'contract_address': config.ledger.contract_address,
            'submission_timeout': config.ledger.submission_timeout,
            'receipt_poll_interval': config.ledger.receipt_poll_interval,
            'request_timeout': config.ledger.request_timeout,
            'gas_limit': config.ledger.gas_limit,
            'max_ciphertext_bytes': config.ledger.max_ciphertext_bytes,
            'max_proof_bytes': config.ledger.max_proof_bytes
        },
        'pipeline': {
            'vote_steps': list(config.pipeline.vote_steps),
            'reputation_steps': list(config.pipeline.reputation_steps)
        },
        'log_dir': str(config.log_dir),
        'log_level': config.log_level,
        'enable_metrics': config.enable_metrics
    }

    with open(config_path, 'w') as f:
        yaml.dump(config_data, f, default_flow_style=False)
