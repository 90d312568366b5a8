from __future__ import annotations

import hmac
from dataclasses import dataclass


@dataclass(frozen=True)
class SecretVerification:
    verified: bool
    reason: str | None = None


def verify_render_secret(*, configured_secret: str, provided: str | None) -> SecretVerification:
    secret = configured_secret.strip()
    if not secret:
        return SecretVerification(verified=False, reason="secret_not_configured")
    if provided is None or not provided.strip():
        return SecretVerification(verified=False, reason="secret_missing")

    expected = secret.encode("utf-8")
    actual = provided.strip().encode("utf-8")
    if len(actual) != len(expected):
        return SecretVerification(verified=False, reason="secret_mismatch")
    if not hmac.compare_digest(actual, expected):
        return SecretVerification(verified=False, reason="secret_mismatch")
    return SecretVerification(verified=True)
