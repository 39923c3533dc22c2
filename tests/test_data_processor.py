import pytest

from face_to_phone.data_processor import (
    simulate_face_embedding, simulate_voice_features, generate_device_fingerprint, string_entropy,
)
from face_to_phone.randomness import SequenceRandomSource


class TestSimulatedFeatures:
    def test_face_embedding_is_deterministic(self):
        first = simulate_face_embedding("capture")
        assert first == simulate_face_embedding(b"capture")
        assert len(first) == 128
        assert all(-1.0 <= v <= 1.0 for v in first)
        assert first != simulate_face_embedding("other capture")

    def test_voice_features_size(self):
        assert len(simulate_voice_features(b"audio")) == 64
        assert len(simulate_voice_features(b"audio", size=16)) == 16


class TestDeviceFingerprint:
    def test_stable_for_same_environment(self):
        env = {"user_agent": "ua", "language": "sw-KE", "timezone": "Africa/Nairobi"}
        reordered = {"timezone": "Africa/Nairobi", "user_agent": "ua", "language": "sw-KE"}

        assert generate_device_fingerprint(env) == generate_device_fingerprint(reordered)
        assert generate_device_fingerprint(env) != generate_device_fingerprint({**env, "language": "en"})
        assert len(generate_device_fingerprint(env)) == 64


class TestStringEntropy:
    @pytest.mark.parametrize("text,expected", [
        ("", 0.0), ("a", 0.0), ("aaaa", 0.0), ("abcd", 1.0), ("AbCd", 1.0),
    ])
    def test_entropy(self, text, expected):
        assert string_entropy(text) == pytest.approx(expected)

    def test_partial(self):
        assert 0.0 < string_entropy("aab") < 1.0


class TestSequenceRandomSource:
    def test_cycles(self):
        source = SequenceRandomSource([0.1, 0.2])
        assert [source.random() for _ in range(3)] == [0.1, 0.2, 0.1]
        assert source.uniform(10, 20) == pytest.approx(12.0)

    def test_rejects_out_of_range(self):
        with pytest.raises(ValueError):
            SequenceRandomSource([1.0])
        with pytest.raises(ValueError):
            SequenceRandomSource([])
