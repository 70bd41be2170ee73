"""Settlement ledger clients."""

from dcaspine.ledger.client import LedgerClient, SimulatedLedgerClient

__all__ = ["LedgerClient", "SimulatedLedgerClient"]
