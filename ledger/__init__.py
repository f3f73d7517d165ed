"""Ledger boundary: typed contract calls and ledger clients."""

from .ledger_client import (
    # Clients
    LedgerClient,
    InMemoryLedgerClient,
    JsonRpcLedgerClient,

    # Typed calls and results
    CastVoteCall,
    RegisterVoterCall,
    TransactionOutcome,
    VoterInfo,

    # ABI helpers
    encode_call,
    function_selector,

    # Exceptions
    LedgerError,
    SubmissionError,
)

__all__ = [
    'LedgerClient',
    'InMemoryLedgerClient',
    'JsonRpcLedgerClient',
    'CastVoteCall',
    'RegisterVoterCall',
    'TransactionOutcome',
    'VoterInfo',
    'encode_call',
    'function_selector',
    'LedgerError',
    'SubmissionError',
]
