"""Configuration management for the confidential submission pipeline."""

from .config import (
    SystemConfig,
    EncryptionConfig,
    ProofConfig,
    LedgerConfig,
    PipelineConfig,
    load_config,
    save_config,
)

__all__ = ['SystemConfig', 'EncryptionConfig', 'ProofConfig', 'LedgerConfig',
           'PipelineConfig', 'load_config', 'save_config']
