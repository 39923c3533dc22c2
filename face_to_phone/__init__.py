"""
Face-to-Phone security core: fraud-risk scoring, encrypted local storage,
security event log and alerts.
"""

__version__ = "1.0.0"
