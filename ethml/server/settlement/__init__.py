"""Result settlement: ledger client and exactly-once submitter."""

from .ledger_client import HttpLedgerClient, LedgerClient, LedgerResult
from .submitter import SettlementSubmitter

__all__ = ["HttpLedgerClient", "LedgerClient", "LedgerResult", "SettlementSubmitter"]
