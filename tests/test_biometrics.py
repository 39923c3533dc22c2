import pytest

from face_to_phone.biometrics import BiometricService
from face_to_phone.database import BiometricRepository
from face_to_phone.event_logger import SecurityEventLog
from face_to_phone.exceptions import NotFoundError
from face_to_phone.randomness import SequenceRandomSource


@pytest.fixture
def event_log(store):
    return SecurityEventLog(store)


@pytest.fixture
def service(store, event_log):
    return BiometricService(BiometricRepository(store), SequenceRandomSource([0.5]), event_log)


class TestBiometricService:
    async def test_same_face_matches(self, service):
        await service.enroll_face("user_1", "face-capture")
        result = await service.verify_face("user_1", "face-capture")

        assert result.match
        assert result.modality == "face"
        assert result.confidence == pytest.approx(0.875)

    async def test_different_face_rejected(self, service):
        await service.enroll_face("user_1", "face-capture")
        result = await service.verify_face("user_1", "impostor-capture")

        assert not result.match
        assert result.confidence < 0.8

    async def test_voice_threshold(self, store):
        service = BiometricService(BiometricRepository(store), SequenceRandomSource([0.0]))
        await service.enroll_voice("user_1", b"voice-sample")

        result = await service.verify_voice("user_1", b"voice-sample")
        assert result.match
        assert result.confidence == pytest.approx(0.8)

    async def test_verify_without_enrollment(self, service):
        with pytest.raises(NotFoundError):
            await service.verify_face("user_1", "face-capture")

    async def test_reenrollment_replaces_template(self, service):
        await service.enroll_face("user_1", "old-capture")
        await service.enroll_face("user_1", "new-capture")

        assert (await service.verify_face("user_1", "new-capture")).match
        assert not (await service.verify_face("user_1", "old-capture")).match
        assert len(await service.repository.get_templates("user_1")) == 1

    async def test_has_biometric_data(self, service):
        assert not await service.has_biometric_data("user_1")
        await service.enroll_face("user_1", "face-capture")
        assert not await service.has_biometric_data("user_1")
        await service.enroll_voice("user_1", b"voice-sample")
        assert await service.has_biometric_data("user_1")

        assert await service.clear_biometric_data("user_1") == 2
        assert not await service.has_biometric_data("user_1")

    async def test_verification_is_logged(self, service, event_log):
        await service.enroll_face("user_1", "face-capture")
        await service.verify_face("user_1", "face-capture")
        await service.verify_face("user_1", "impostor-capture")

        events = await event_log.query(type="biometric", user_id="user_1")
        assert sorted(e.severity for e in events) == ["low", "medium"]
        assert {e.details["success"] for e in events} == {True, False}
