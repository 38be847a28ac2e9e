from __future__ import annotations

import hashlib
import hmac

from django.conf import settings

from attendees.errors import InvalidSignature


CREDENTIAL_LENGTH = 64


def parse_credential(value: str | bytes) -> bytes:
    if isinstance(value, str):
        try:
            value = bytes.fromhex(value)
        except ValueError as exc:
            raise InvalidSignature("Credential must be hex encoded") from exc
    if len(value) != CREDENTIAL_LENGTH:
        raise InvalidSignature(f"Credential must be exactly {CREDENTIAL_LENGTH} bytes")
    return bytes(value)


def sign_credential(secret: str, owner: str, event_id: str) -> bytes:
    message = f"{owner}:{event_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha512).digest()


def verify_credential(owner: str, event_id: str, credential: str | bytes) -> bytes:
    blob = parse_credential(credential)
    secret = getattr(settings, "ATTENDANCE_CREDENTIAL_SECRET", "")
    if not secret:
        return blob
    if not hmac.compare_digest(blob, sign_credential(secret, owner, event_id)):
        raise InvalidSignature()
    return blob
