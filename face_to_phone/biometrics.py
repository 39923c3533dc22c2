"""
Biometric enrollment and verification over encrypted templates.
"""
import logging
from typing import Optional

from .config import config
from .data_processor import simulate_face_embedding, simulate_voice_features, Capture
from .database import BiometricRepository
from .exceptions import NotFoundError
from .models import BiometricTemplate, VerificationResult
from .randomness import RandomSource, NumpyRandomSource
from .similarity import similarity

logger = logging.getLogger(__name__)


class BiometricService:
    """Enrolls and verifies face and voice captures for a user."""

    def __init__(self, repository: BiometricRepository,
                 random_source: Optional[RandomSource] = None,
                 event_log=None,
                 face_threshold: Optional[float] = None,
                 voice_threshold: Optional[float] = None):
        self.repository = repository
        self.random_source = random_source or NumpyRandomSource()
        self.event_log = event_log
        self.face_threshold = config.get("biometrics.face_threshold", 0.80) if face_threshold is None else face_threshold
        self.voice_threshold = config.get("biometrics.voice_threshold", 0.75) if voice_threshold is None else voice_threshold
        self.face_size = config.get("biometrics.face_embedding_size", 128)
        self.voice_size = config.get("biometrics.voice_embedding_size", 64)

    async def enroll_face(self, user_id: str, image_data: Capture) -> BiometricTemplate:
        """Store (or replace) the user's face template."""
        template = await self.repository.store_template(
            user_id, "face", simulate_face_embedding(image_data, self.face_size)
        )
        logger.info(f"Face template stored for {user_id}")
        return template

    async def enroll_voice(self, user_id: str, audio_data: bytes) -> BiometricTemplate:
        """Store (or replace) the user's voice template."""
        template = await self.repository.store_template(
            user_id, "voice", simulate_voice_features(audio_data, self.voice_size)
        )
        logger.info(f"Voice template stored for {user_id}")
        return template

    async def verify_face(self, user_id: str, image_data: Capture) -> VerificationResult:
        return await self._verify(
            user_id, "face", simulate_face_embedding(image_data, self.face_size), self.face_threshold
        )

    async def verify_voice(self, user_id: str, audio_data: bytes) -> VerificationResult:
        return await self._verify(
            user_id, "voice", simulate_voice_features(audio_data, self.voice_size), self.voice_threshold
        )

    async def _verify(self, user_id: str, modality: str, features, threshold: float) -> VerificationResult:
        template = await self.repository.get_template(user_id, modality)
        if template is None:
            raise NotFoundError(f"No {modality} template enrolled for {user_id}")

        confidence = similarity(template.template, features, self.random_source)
        result = VerificationResult(modality=modality, match=confidence >= threshold, confidence=confidence)
        logger.info(f"{modality.capitalize()} verification for {user_id}: "
                    f"match={result.match} confidence={confidence:.3f}")

        if self.event_log is not None:
            await self.event_log.log_biometric_event(user_id, modality, result.match, confidence)
        return result

    async def has_biometric_data(self, user_id: str) -> bool:
        """True when both face and voice are enrolled."""
        face = await self.repository.get_template(user_id, "face")
        voice = await self.repository.get_template(user_id, "voice")
        return face is not None and voice is not None

    async def clear_biometric_data(self, user_id: str) -> int:
        deleted = await self.repository.delete_templates(user_id)
        logger.info(f"Cleared {deleted} biometric templates for {user_id}")
        return deleted
