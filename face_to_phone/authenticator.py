"""
Platform authenticator access with a simulated fallback.

Callers always get a bool back, whether a real platform authenticator
answered or the simulation did.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .config import config
from .exceptions import CapabilityUnavailableError
from .randomness import RandomSource, NumpyRandomSource

logger = logging.getLogger(__name__)


class PlatformAuthenticator:
    """Interface of a device authenticator (WebAuthn-style)."""

    async def is_supported(self) -> bool:
        raise NotImplementedError("PlatformAuthenticator subclasses must implement is_supported")

    async def register(self, user_id: str, display_name: str) -> bool:
        raise NotImplementedError("PlatformAuthenticator subclasses must implement register")

    async def authenticate(self, user_id: str) -> bool:
        raise NotImplementedError("PlatformAuthenticator subclasses must implement authenticate")


class SimulatedAuthenticator(PlatformAuthenticator):
    """Succeeds with a fixed probability after a fixed delay."""

    def __init__(self, random_source: Optional[RandomSource] = None,
                 success_rate: Optional[float] = None,
                 delay_seconds: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.random_source = random_source or NumpyRandomSource()
        self.success_rate = config.get("authenticator.simulation_success_rate", 0.95) if success_rate is None else success_rate
        self.delay_seconds = config.get("authenticator.simulation_delay_seconds", 2.0) if delay_seconds is None else delay_seconds
        self.sleep = sleep

    async def is_supported(self) -> bool:
        return True

    async def _scan(self) -> bool:
        await self.sleep(self.delay_seconds)
        return self.random_source.random() < self.success_rate

    async def register(self, user_id: str, display_name: str) -> bool:
        return await self._scan()

    async def authenticate(self, user_id: str) -> bool:
        return await self._scan()


class AuthenticatorGateway:
    """Routes to the platform authenticator, or to the simulation when it is unavailable."""

    def __init__(self, platform: Optional[PlatformAuthenticator] = None,
                 simulator: Optional[SimulatedAuthenticator] = None):
        self.platform = platform
        self.simulator = simulator or SimulatedAuthenticator()

    async def _platform_or_raise(self) -> PlatformAuthenticator:
        if self.platform is None or not await self.platform.is_supported():
            raise CapabilityUnavailableError("Platform authenticator not supported")
        return self.platform

    async def register(self, user_id: str, display_name: str) -> bool:
        try:
            platform = await self._platform_or_raise()
            return await platform.register(user_id, display_name)
        except CapabilityUnavailableError as e:
            logger.warning(f"{str(e)} - simulating registration for {user_id}")
            return await self.simulator.register(user_id, display_name)

    async def authenticate(self, user_id: str) -> bool:
        try:
            platform = await self._platform_or_raise()
            return await platform.authenticate(user_id)
        except CapabilityUnavailableError as e:
            logger.warning(f"{str(e)} - simulating authentication for {user_id}")
            return await self.simulator.authenticate(user_id)
