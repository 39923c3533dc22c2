import asyncio
import json
from datetime import datetime, timedelta

import fakeredis
import pytest

from face_to_phone.database import (
    StorageConnection, ProfileRepository, TransactionRepository, BiometricRepository, UserRepository,
)
from face_to_phone.exceptions import StorageError, EncryptionError, NotFoundError, ValidationError
from face_to_phone.models import TransactionRecord, UserRiskProfile, HistoryEntry

from .conftest import NOON


def make_record(user_id="user_1", status="approved", timestamp=NOON, amount=100.0, fraud_score=0.1):
    return TransactionRecord(
        user_id=user_id,
        recipient="Jane",
        amount=amount,
        status=status,
        fraud_score=fraud_score,
        biometric_verified=True,
        timestamp=timestamp,
    )


class TestEncryptedStore:
    async def test_put_and_get(self, store):
        await store.put("users", "u1", {"email": "a@example.com", "created_at": NOON.isoformat()})

        assert await store.get("users", "u1") == {"email": "a@example.com", "created_at": NOON.isoformat()}
        assert await store.get("users", "missing") is None
        assert await store.exists("users", "u1")

    async def test_nothing_readable_at_rest(self, store):
        await store.put("users", "u1", {"email": "secret@example.com", "phone_number": "+254700000001"})

        for key in await store.redis.keys("*"):
            assert "secret@example.com" not in key
            if await store.redis.type(key) == "hash":
                for value in (await store.redis.hgetall(key)).values():
                    assert "secret@example.com" not in value
                    assert "+254700000001" not in value

    async def test_index_lookup(self, store):
        await store.put("transactions", "t1", {"user_id": "a", "status": "approved", "timestamp": NOON.isoformat()})
        await store.put("transactions", "t2", {"user_id": "a", "status": "blocked", "timestamp": NOON.isoformat()})
        await store.put("transactions", "t3", {"user_id": "b", "status": "blocked", "timestamp": NOON.isoformat()})

        assert [r["status"] for r in await store.get_all_by_index("transactions", "user_id", "a")] == \
            ["approved", "blocked"]
        both = await store.find("transactions", {"user_id": "a", "status": "blocked"})
        assert len(both) == 1 and both[0]["user_id"] == "a"

    async def test_overwrite_moves_index(self, store):
        await store.put("transactions", "t1", {"user_id": "a", "status": "approved", "timestamp": NOON.isoformat()})
        await store.put("transactions", "t1", {"user_id": "a", "status": "blocked", "timestamp": NOON.isoformat()})

        assert await store.find("transactions", {"status": "approved"}) == []
        assert len(await store.find("transactions", {"status": "blocked"})) == 1
        assert await store.count("transactions") == 1

    async def test_find_by_time_range(self, store):
        for i in range(5):
            ts = NOON - timedelta(days=i)
            await store.put("events", f"e{i}", {"type": "login", "timestamp": ts.isoformat()})

        rows = await store.find("events", start=NOON - timedelta(days=2), end=NOON)
        assert len(rows) == 3

    async def test_unknown_index_rejected(self, store):
        with pytest.raises(StorageError):
            await store.find("events", {"recipient": "x"})
        with pytest.raises(StorageError):
            await store.get("nope", "x")

    async def test_failed_encryption_writes_nothing(self, store):
        with pytest.raises(EncryptionError):
            await store.put("users", "u1", {"email": "a@example.com", "bad": object()})

        assert not await store.exists("users", "u1")
        assert await store.find("users", {"email": "a@example.com"}) == []

    async def test_recent_and_trim(self, store):
        for i in range(5):
            await store.put("alerts", f"a{i}", {"type": "fraud_attempt", "severity": "high",
                                                "timestamp": NOON.isoformat(), "n": i})

        assert [r["n"] for r in await store.recent("alerts", limit=2)] == [4, 3]
        assert await store.recent("alerts", limit=0) == []

        dropped = await store.trim("alerts", 3)
        assert dropped == ["a0", "a1"]
        assert [r["n"] for r in await store.recent("alerts")] == [4, 3, 2]
        assert len(await store.find("alerts", {"severity": "high"})) == 3

    async def test_delete_and_clear(self, store):
        await store.put("users", "u1", {"email": "a@example.com"})
        await store.put("users", "u2", {"email": "b@example.com"})

        assert await store.delete("users", "u1")
        assert not await store.delete("users", "u1")
        assert await store.get_all_by_index("users", "email", "a@example.com") == []

        await store.clear("users")
        assert await store.count("users") == 0

    async def test_clear_all_keeps_key(self, store):
        await store.put("users", "u1", {"email": "a@example.com"})
        await store.clear_all()

        assert await store.count("users") == 0
        assert await store.redis.exists("test:crypto:key")

    async def test_tampered_record_raises(self, store):
        await store.put("users", "u1", {"email": "a@example.com"})
        raw = json.loads(await store.redis.hget("test:users:data", "u1"))
        raw["iv"] = "00" * 12
        await store.redis.hset("test:users:data", "u1", json.dumps(raw))

        with pytest.raises(StorageError):
            await store.get("users", "u1")

    async def test_timeout(self, store):
        store.timeout = 0.01
        with pytest.raises(StorageError):
            await store._run(asyncio.sleep(1))


class TestStorageConnection:
    async def test_key_survives_reconnect(self, fake_server, connection):
        await connection.store.put("users", "u1", {"email": "a@example.com"})

        second = StorageConnection(
            redis_client=fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True),
            key_prefix="test",
        )
        await second.initialize()
        assert await second.store.get("users", "u1") == {"email": "a@example.com"}
        await second.close()

    async def test_other_prefix_gets_own_key(self, fake_server, connection):
        other = StorageConnection(
            redis_client=fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True),
            key_prefix="other",
        )
        await other.initialize()
        assert other.codec.index_token("users", "email", "x") != \
            connection.codec.index_token("users", "email", "x")
        await other.close()


class TestProfileRepository:
    async def test_default_profile(self, store):
        profile = await ProfileRepository(store).get_profile("user_1")
        assert profile == UserRiskProfile(user_id="user_1")

    async def test_save_and_load(self, store):
        repo = ProfileRepository(store)
        profile = UserRiskProfile(
            user_id="user_1",
            average_transaction_amount=50.0,
            transaction_history=[HistoryEntry(amount=50.0, timestamp=NOON, recipient="Jane")],
            last_transaction_time=NOON,
        )
        await repo.save_profile(profile)

        assert await repo.get_profile("user_1") == profile
        assert await repo.delete_profile("user_1")
        assert (await repo.get_profile("user_1")).transaction_history == []


class TestTransactionRepository:
    async def test_insert_and_get(self, store):
        repo = TransactionRepository(store)
        record = make_record()
        await repo.insert_transaction(record)

        assert await repo.get_transaction(record.id) == record
        assert await repo.get_transaction("tx_missing") is None

    async def test_records_are_append_only(self, store):
        repo = TransactionRepository(store)
        record = make_record()
        await repo.insert_transaction(record)
        with pytest.raises(StorageError):
            await repo.insert_transaction(record)

    async def test_user_transactions_newest_first(self, store):
        repo = TransactionRepository(store)
        for i in range(3):
            await repo.insert_transaction(make_record(timestamp=NOON + timedelta(hours=i), amount=i + 1.0))
        await repo.insert_transaction(make_record(user_id="user_2"))
        await repo.insert_transaction(make_record(status="blocked", timestamp=NOON - timedelta(days=3)))

        records = await repo.get_user_transactions("user_1")
        assert [r.amount for r in records] == [3.0, 2.0, 1.0, 100.0]
        assert len(await repo.get_user_transactions("user_1", status="blocked")) == 1
        assert len(await repo.get_user_transactions("user_1", limit=2)) == 2
        assert await repo.get_user_transactions("user_1", limit=0) == []
        assert len(await repo.get_user_transactions("user_1", start_time=NOON - timedelta(hours=1))) == 3

    async def test_recent_transactions(self, store):
        repo = TransactionRepository(store)
        await repo.insert_transaction(make_record(timestamp=datetime.now() - timedelta(days=1)))
        await repo.insert_transaction(make_record(timestamp=datetime.now() - timedelta(days=30)))

        assert len(await repo.get_recent_transactions("user_1", days=7)) == 1

    async def test_stats(self, store):
        repo = TransactionRepository(store)
        await repo.insert_transaction(make_record(amount=100.0, fraud_score=0.1))
        await repo.insert_transaction(make_record(amount=300.0, fraud_score=0.9, status="blocked"))

        stats = await repo.get_transaction_stats("user_1")
        assert stats.total == 2
        assert stats.approved == 1
        assert stats.blocked == 1
        assert stats.total_amount == pytest.approx(400.0)
        assert stats.average_amount == pytest.approx(200.0)
        assert stats.average_fraud_score == pytest.approx(0.5)

    async def test_stats_empty(self, store):
        stats = await TransactionRepository(store).get_transaction_stats("nobody")
        assert stats.total == 0 and stats.average_amount == 0.0


class TestBiometricRepository:
    async def test_reenrollment_overwrites(self, store):
        repo = BiometricRepository(store)
        await repo.store_template("user_1", "face", [0.1, 0.2])
        await repo.store_template("user_1", "face", [0.3, 0.4])
        await repo.store_template("user_1", "voice", [0.5])

        templates = await repo.get_templates("user_1")
        assert len(templates) == 2
        assert (await repo.get_template("user_1", "face")).template == [0.3, 0.4]

    async def test_delete_templates(self, store):
        repo = BiometricRepository(store)
        await repo.store_template("user_1", "face", [0.1])
        await repo.store_template("user_1", "voice", [0.2])
        await repo.store_template("user_2", "face", [0.3])

        assert await repo.delete_templates("user_1") == 2
        assert await repo.get_template("user_1", "face") is None
        assert await repo.get_template("user_2", "face") is not None


class TestUserRepository:
    async def test_create_and_lookup(self, store):
        repo = UserRepository(store)
        user = await repo.create_user("Amina Otieno", "+254700000001", "amina@example.com")

        assert user.id.startswith("user_")
        assert user.trust_score == 85
        assert await repo.get_user(user.id) == user
        assert await repo.get_user_by_email("amina@example.com") == user
        assert await repo.get_user_by_email("nobody@example.com") is None

    async def test_duplicate_email(self, store):
        repo = UserRepository(store)
        await repo.create_user("Amina", "+254700000001", "amina@example.com")
        with pytest.raises(ValidationError):
            await repo.create_user("Other", "+254700000002", "amina@example.com")

    async def test_update_user(self, store):
        repo = UserRepository(store)
        user = await repo.create_user("Amina", "+254700000001", "amina@example.com")

        updated = await repo.update_user(user.id, {"full_name": "Amina O.", "id": "hijack"})
        assert updated.id == user.id
        assert updated.full_name == "Amina O."
        assert (await repo.get_user(user.id)).full_name == "Amina O."

        with pytest.raises(NotFoundError):
            await repo.update_user("user_missing", {"full_name": "x"})

    async def test_export_user_data(self, store):
        users = UserRepository(store)
        user = await users.create_user("Amina", "+254700000001", "amina@example.com")
        await BiometricRepository(store).store_template(user.id, "face", [0.1, 0.2])
        await TransactionRepository(store).insert_transaction(make_record(user_id=user.id))

        export = json.loads(await users.export_user_data(user.id))
        assert export["user"]["email"] == "amina@example.com"
        assert len(export["transactions"]) == 1
        assert export["biometrics"][0]["type"] == "face"
        assert "template" not in export["biometrics"][0]
        assert "exported_at" in export
