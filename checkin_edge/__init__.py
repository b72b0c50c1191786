"""On-device biometric check-in core: matching, stability, arbitration and offline sync."""
