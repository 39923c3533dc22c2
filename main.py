"""
Scripted walkthrough of the Face-to-Phone security core against the
configured Redis instance.
"""
import asyncio
import logging
from datetime import datetime, timedelta

from face_to_phone.config import configure_logging
from face_to_phone.core import SecurityCore
from face_to_phone.data_processor import generate_device_fingerprint
from face_to_phone.exceptions import FaceToPhoneError

logger = logging.getLogger("face_to_phone.demo")


async def run_demo():
    core = await SecurityCore.create()
    try:
        user = await core.users.get_user_by_email("demo@example.com")
        if user is None:
            user = await core.users.create_user("Demo User", "+254700000000", "demo@example.com")

        await core.biometrics.enroll_face(user.id, "demo-face-capture")
        await core.biometrics.enroll_voice(user.id, b"demo-voice-capture")
        face = await core.biometrics.verify_face(user.id, "demo-face-capture")
        voice = await core.biometrics.verify_voice(user.id, b"demo-voice-capture")
        print(f"Face match: {face.match} ({face.confidence:.2f}), voice match: {voice.match} ({voice.confidence:.2f})")

        fingerprint = generate_device_fingerprint({
            "user_agent": "demo-cli",
            "platform": "linux",
            "timezone": "Africa/Nairobi",
        })
        now = datetime.now().replace(hour=12)
        scenarios = [
            {"amount": 50, "recipient": "Jane", "timestamp": now - timedelta(hours=3),
             "user_verified": face.match and voice.match},
            {"amount": 500, "recipient": "Jane", "timestamp": now - timedelta(hours=1),
             "user_verified": True},
            {"amount": 2000, "recipient": "Unknown Merchant", "timestamp": now,
             "user_verified": False},
        ]
        for data in scenarios:
            outcome = await core.transactions.process_transaction(
                user.id, data, device_fingerprint=fingerprint, use_secondary=True
            )
            print(f"\n{data['amount']} -> {data['recipient']}: {outcome.record.status.upper()} "
                  f"score={outcome.result.risk_score:.2f} level={outcome.result.risk_level}")
            print(f"  {outcome.message}")
            for reason in outcome.result.reasons:
                print(f"  - {reason}")

        stats = await core.alerts.stats()
        print(f"\nAlerts: {stats.total} total, {stats.unresolved} unresolved, {stats.critical} critical")

        report = await core.event_log.export_report(fmt="text")
        print(f"\nReport {report.filename} ({report.mime_type}):\n")
        print(report.content.decode("utf-8"))
    finally:
        await core.close()


def main():
    configure_logging()
    try:
        asyncio.run(run_demo())
    except FaceToPhoneError as e:
        logger.error(f"Demo failed: {str(e)}")
        print(f"\n{e.guidance}")


if __name__ == "__main__":
    main()
