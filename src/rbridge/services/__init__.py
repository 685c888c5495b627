"""Bridge services: address registry, deposit detection, settlement, status."""

from rbridge.services.address_registry import AddressRegistry
from rbridge.services.bridge import Bridge
from rbridge.services.detector import ConfirmationTracker, DepositDetector, MonitorRegistry
from rbridge.services.network_status import NetworkStatusService
from rbridge.services.settlement import ReconcileReport, SettlementOrchestrator

__all__ = [
    "AddressRegistry",
    "Bridge",
    "ConfirmationTracker",
    "DepositDetector",
    "MonitorRegistry",
    "NetworkStatusService",
    "ReconcileReport",
    "SettlementOrchestrator",
]
