"""
Transaction flow: validate, score, record, update the profile, publish.
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, List, Any, Optional, Union

import pydantic

from .database import ProfileRepository, TransactionRepository
from .events import EventBus, FRAUD_ANALYZED
from .exceptions import ValidationError
from .ml_model import SecondaryScorer, combine_results, score_with
from .models import (
    TransactionData, TransactionRecord, TransactionStats, TransactionOutcome, FraudResult,
    FraudAnalysis, UserRiskProfile, Location,
)
from .rule_engine import RuleEngine, update_profile, rebuild_profile

logger = logging.getLogger(__name__)

BLOCKED_BIOMETRIC_MESSAGE = "Biometric verification failed - retry the face and voice check or contact support"
BLOCKED_MESSAGE = "Transaction blocked for your protection - contact support if this was you"
APPROVED_MESSAGE = "Transaction approved"
ELEVATED_MESSAGE = "Transaction approved - we flagged some unusual activity on your account"


def parse_transaction(data: Union[TransactionData, Dict[str, Any]]) -> TransactionData:
    """Coerce raw input into a TransactionData, raising our ValidationError on bad input."""
    if isinstance(data, TransactionData):
        return data
    try:
        return TransactionData.model_validate(data)
    except pydantic.ValidationError as e:
        problems = "; ".join(err["msg"] for err in e.errors())
        raise ValidationError(f"Invalid transaction: {problems}") from e


class TransactionService:
    """
    Runs transactions through the risk engine.

    Work for one user is serialised with a per-user lock, so a double
    submission cannot interleave profile reads and writes. The record is
    written before the profile; if the profile write is lost the profile can
    be re-derived with ``rebuild_profile``.
    """

    def __init__(self, profiles: ProfileRepository, transactions: TransactionRepository,
                 engine: RuleEngine, bus: Optional[EventBus] = None,
                 secondary_scorer: Optional[SecondaryScorer] = None):
        self.profiles = profiles
        self.transactions = transactions
        self.engine = engine
        self.bus = bus or EventBus()
        self.secondary_scorer = secondary_scorer
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        """Hold the user's lock; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if self._lock_users[user_id] == 0:
                del self._lock_users[user_id]
                del self._locks[user_id]

    def _score(self, transaction: TransactionData, profile: UserRiskProfile,
               use_secondary: bool) -> FraudResult:
        result = self.engine.analyze(transaction, profile)
        if use_secondary and self.secondary_scorer is not None:
            secondary, reasons = score_with(self.secondary_scorer, transaction, profile)
            result = combine_results(result, secondary, reasons, self.engine.policy)
        return result

    async def assess(self, user_id: str, transaction: Union[TransactionData, Dict[str, Any]],
                     use_secondary: bool = False) -> FraudResult:
        """Score a transaction without recording it or touching the profile."""
        transaction = parse_transaction(transaction)
        profile = await self.profiles.get_profile(user_id)
        return self._score(transaction, profile, use_secondary)

    async def process_transaction(
        self,
        user_id: str,
        transaction: Union[TransactionData, Dict[str, Any]],
        device_fingerprint: Optional[str] = None,
        location: Optional[Location] = None,
        use_secondary: bool = False,
        timeout: Optional[float] = None
    ) -> TransactionOutcome:
        """
        Score and record a transaction.

        Args:
            user_id: Paying user
            transaction: Transaction data or a raw dict
            device_fingerprint: Identifier of the submitting device
            location: Optional position of the device
            use_secondary: Combine with the secondary scorer
            timeout: Optional deadline in seconds for the whole flow

        Returns:
            Stored record, fraud result and a message for the user

        Raises:
            ValidationError: malformed transaction
            StorageError: the record could not be stored
        """
        transaction = parse_transaction(transaction)
        coro = self._process(user_id, transaction, device_fingerprint, location, use_secondary)
        if timeout is not None:
            return await asyncio.wait_for(coro, timeout)
        return await coro

    async def _process(self, user_id: str, transaction: TransactionData,
                       device_fingerprint: Optional[str], location: Optional[Location],
                       use_secondary: bool) -> TransactionOutcome:
        async with self._user_lock(user_id):
            profile = await self.profiles.get_profile(user_id)
            result = self._score(transaction, profile, use_secondary)

            record = TransactionRecord(
                user_id=user_id,
                recipient=transaction.recipient,
                amount=transaction.amount,
                currency=transaction.currency,
                description=transaction.description,
                status="blocked" if result.is_blocked else "approved",
                fraud_score=result.risk_score,
                fraud_reasons=result.reasons,
                risk_level=result.risk_level,
                biometric_verified=transaction.user_verified,
                timestamp=transaction.timestamp,
                device_fingerprint=device_fingerprint or "unknown",
                location=location,
            )
            await self.transactions.insert_transaction(record)

            updated = update_profile(
                profile, transaction, self.engine.policy.max_history,
                suspicious=result.risk_level != "low",
            )
            await self.profiles.save_profile(updated)

        logger.info(f"Transaction {record.id} for {user_id}: {record.status} "
                    f"(score={result.risk_score:.2f}, level={result.risk_level})")

        await self.bus.publish(FRAUD_ANALYZED, FraudAnalysis(
            user_id=user_id,
            transaction=transaction,
            result=result,
            record_id=record.id,
            device_fingerprint=device_fingerprint,
        ))

        return TransactionOutcome(record=record, result=result, message=self._message(result))

    def _message(self, result: FraudResult) -> str:
        if result.is_blocked:
            if "BIOMETRIC_FAILED" in result.triggered_rules:
                return BLOCKED_BIOMETRIC_MESSAGE
            return BLOCKED_MESSAGE
        if result.risk_level != "low":
            return ELEVATED_MESSAGE
        return APPROVED_MESSAGE

    async def get_history(self, user_id: str, status: Optional[str] = None,
                          limit: Optional[int] = None) -> List[TransactionRecord]:
        return await self.transactions.get_user_transactions(user_id, status=status, limit=limit)

    async def get_stats(self, user_id: str) -> TransactionStats:
        return await self.transactions.get_transaction_stats(user_id)

    async def rebuild_profile(self, user_id: str) -> UserRiskProfile:
        """Re-derive and save the profile from the stored transaction log."""
        async with self._user_lock(user_id):
            records = await self.transactions.get_user_transactions(user_id)
            profile = rebuild_profile(user_id, records, self.engine.policy.max_history)
            await self.profiles.save_profile(profile)
        logger.info(f"Rebuilt risk profile for {user_id} from {len(records)} transactions")
        return profile

    async def reset_user(self, user_id: str) -> bool:
        """Forget the user's risk profile (full reset)."""
        async with self._user_lock(user_id):
            return await self.profiles.delete_profile(user_id)

    async def clear_fraud_data(self):
        """Drop every profile and transaction record."""
        await self.profiles.store.clear(self.profiles.collection)
        await self.transactions.store.clear(self.transactions.collection)
        logger.info("All fraud data cleared")
