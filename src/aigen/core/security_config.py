"""Redaction rules shared by the structured logger.

Generation inputs travel through logs as attempt context; these keys are
masked before a record is emitted so provider credentials and user
identifiers never land in log sinks. Matching is exact after normalising
case and surrounding whitespace.
"""

CREDENTIAL_KEYS = frozenset(
    {
        "api_key",
        "fal_key",
        "key",
        "secret",
        "token",
        "access_token",
        "refresh_token",
        "authorization",
        "auth_token",
        "bearer",
        "x-api-key",
    }
)

IDENTITY_KEYS = frozenset({"user_id", "userid", "email", "phone", "phone_number"})

# Raw media is large and may be personal
MEDIA_PAYLOAD_KEYS = frozenset(
    {"image_base64", "source_image_base64", "target_image_base64", "image_urls"}
)

SENSITIVE_KEYS = CREDENTIAL_KEYS | IDENTITY_KEYS | MEDIA_PAYLOAD_KEYS


def is_sensitive_key(key: str) -> bool:
    return key.strip().lower() in SENSITIVE_KEYS
