"""
Authentication utilities for opaque identifiers and identity serialization.

This module handles:
- Decoding/encoding opaque user identifiers (base64 of "namespace:id")
- Serializing the authenticated identity into the session and back
- Constant-time OAuth state comparison
"""

import base64
import binascii
import json
import logging
import secrets
from typing import Any, Optional

from pydantic import ValidationError

from ..models import AuthenticatedIdentity, OpaqueId

logger = logging.getLogger("gateway.auth.utils")


# =============================================================================
# Exceptions
# =============================================================================

class IdentityDeserializationError(Exception):
    """The session ``user`` payload could not be turned back into an identity."""
    pass


# =============================================================================
# Opaque Identifiers
# =============================================================================

def encode_opaque_id(namespace: str, id: str) -> str:
    """
    Encode a namespace and id into an opaque, URL-safe token.

    Args:
        namespace: Identifier namespace (e.g. "reaction/account")
        id: Identifier within the namespace

    Returns:
        URL-safe base64 text of "namespace:id"
    """
    raw = f"{namespace}:{id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_opaque_id(opaque_id: Optional[str]) -> Optional[OpaqueId]:
    """
    Decode an opaque identifier into its namespace and id.

    Decoding is lenient about the base64 alphabet (standard or URL-safe) and
    about missing padding. Text without a ":" decodes to an OpaqueId whose
    ``id`` is None; callers must treat that as an unresolved identifier.

    Args:
        opaque_id: Token produced by encode_opaque_id, or None

    Returns:
        OpaqueId, or None for None input and for input that is not base64
    """
    if opaque_id is None:
        return None

    normalized = opaque_id.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)

    try:
        raw = base64.b64decode(normalized)
    except (binascii.Error, ValueError):
        logger.debug("Opaque identifier is not valid base64")
        return None

    text = raw.decode("utf-8", errors="replace")
    namespace, sep, id = text.partition(":")
    return OpaqueId(namespace=namespace, id=id if sep else None)


# =============================================================================
# Identity Serialization
# =============================================================================

def serialize_identity(identity: AuthenticatedIdentity) -> str:
    """Serialize an identity for storage in the session ``user`` field."""
    return identity.model_dump_json(by_alias=True)


def deserialize_identity(payload: Any) -> AuthenticatedIdentity:
    """
    Turn a stored session ``user`` value back into an identity.

    Raises:
        IdentityDeserializationError: If the payload is not a serialized identity
    """
    if not isinstance(payload, str):
        raise IdentityDeserializationError(
            f"Expected serialized identity string, got {type(payload).__name__}"
        )

    try:
        return AuthenticatedIdentity.model_validate(json.loads(payload))
    except (json.JSONDecodeError, ValidationError) as e:
        raise IdentityDeserializationError(f"Corrupt identity payload: {e}") from e


# =============================================================================
# Token Validation Helpers
# =============================================================================

def validate_state(received_state: Optional[str], expected_state: Optional[str]) -> bool:
    """
    Validate OAuth state parameter.

    Args:
        received_state: State from callback
        expected_state: State from session

    Returns:
        True if both are present and match
    """
    if not received_state or not expected_state:
        return False
    return secrets.compare_digest(received_state.encode("utf-8"), expected_state.encode("utf-8"))
