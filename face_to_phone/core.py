"""
Wiring of the security core: one object holding every service, built on an
injected storage connection.
"""
import logging
from typing import Optional

from .authenticator import AuthenticatorGateway, PlatformAuthenticator, SimulatedAuthenticator
from .biometrics import BiometricService
from .database import (
    StorageConnection, ProfileRepository, TransactionRepository, BiometricRepository, UserRepository,
)
from .event_logger import SecurityEventLog
from .events import EventBus, FRAUD_ANALYZED
from .ml_model import HeuristicScorer, SecondaryScorer
from .monitoring import AlertManager
from .randomness import RandomSource, NumpyRandomSource
from .rule_engine import RuleEngine, RiskPolicy
from .transactions import TransactionService

logger = logging.getLogger(__name__)


class SecurityCore:
    """Services sharing one storage connection and one event bus."""

    def __init__(self, connection: StorageConnection,
                 random_source: Optional[RandomSource] = None,
                 policy: Optional[RiskPolicy] = None,
                 platform: Optional[PlatformAuthenticator] = None,
                 secondary_scorer: Optional[SecondaryScorer] = None):
        if not connection.initialized:
            raise RuntimeError("Storage connection must be initialized first")
        self.connection = connection
        store = connection.store
        random_source = random_source or NumpyRandomSource()

        self.bus = EventBus()
        self.alerts = AlertManager(store)
        self.event_log = SecurityEventLog(store, notifier=self.alerts)
        self.users = UserRepository(store)
        self.biometrics = BiometricService(BiometricRepository(store), random_source, self.event_log)
        self.authenticator = AuthenticatorGateway(platform, SimulatedAuthenticator(random_source))
        self.engine = RuleEngine(policy, random_source)
        self.transactions = TransactionService(
            ProfileRepository(store),
            TransactionRepository(store),
            self.engine,
            self.bus,
            secondary_scorer or HeuristicScorer(random_source),
        )

        self.bus.subscribe(FRAUD_ANALYZED, self.event_log.on_fraud_analyzed)
        self.bus.subscribe(FRAUD_ANALYZED, self.alerts.on_fraud_analyzed)

    @classmethod
    async def create(cls, connection: Optional[StorageConnection] = None, **kwargs) -> "SecurityCore":
        """Initialize the connection (a default one if none is given) and wire the services."""
        connection = connection or StorageConnection()
        await connection.initialize()
        core = cls(connection, **kwargs)
        await core.event_log.log_system("core_initialized")
        return core

    async def close(self):
        await self.connection.close()
