"""
Lending System Module

Wires storage, event dispatcher, audit trail and the two services together
from a LendingConfig.
"""

from typing import Optional

from .config import LendingConfig, get_config
from .storage import StorageInterface, create_storage
from .events import EventDispatcher
from .audit import AuditTrail
from .logging_config import setup_logging_from_config
from .loans import LoanManager
from .payments import PaymentProcessor


class LendingSystem:
    """Lending engine with all components initialized"""

    def __init__(self, config: Optional[LendingConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 configure_logging: bool = True):
        self.config = config or get_config()
        if configure_logging:
            setup_logging_from_config(self.config)

        self.storage = storage or create_storage(self.config.database_url)
        self.event_dispatcher = EventDispatcher()

        self.audit_trail: Optional[AuditTrail] = None
        if self.config.enable_audit_logging:
            self.audit_trail = AuditTrail(self.storage)
            self.audit_trail.attach(self.event_dispatcher)

        self.loan_manager = LoanManager(self.storage, self.event_dispatcher, self.config)
        self.payment_processor = PaymentProcessor(
            self.storage, self.loan_manager, self.event_dispatcher, self.config
        )

    def close(self) -> None:
        self.storage.close()


# Global lending system instance, built on first use
_lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    global _lending_system
    if _lending_system is None:
        _lending_system = LendingSystem()
    return _lending_system
