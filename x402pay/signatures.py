"""
Detached ed25519 signature verification for authorization payloads.
"""
import base64
import binascii
from typing import Optional, Union

import base58
from loguru import logger
from solders.pubkey import Pubkey
from solders.signature import Signature

SIGNATURE_LENGTH = 64
PUBLIC_KEY_LENGTH = 32


def is_valid_address(address: str) -> bool:
    """Validate Solana address format (base58, 32 bytes)."""
    try:
        return len(base58.b58decode(address)) == PUBLIC_KEY_LENGTH
    except Exception:
        return False


def decode_signature(signature: Union[str, bytes]) -> Optional[bytes]:
    """Decode a base58 (or base64) signature into its 64 raw bytes."""
    if isinstance(signature, (bytes, bytearray)):
        raw = bytes(signature)
        return raw if len(raw) == SIGNATURE_LENGTH else None
    if not isinstance(signature, str) or not signature:
        return None
    try:
        raw = base58.b58decode(signature)
        if len(raw) == SIGNATURE_LENGTH:
            return raw
    except ValueError:
        pass
    try:
        raw = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return None
    return raw if len(raw) == SIGNATURE_LENGTH else None


class SignatureVerifier:
    """
    Verifies a detached signature over a serialized payload.

    Comparison is delegated to the ed25519 verify primitive; malformed keys
    or signatures yield False rather than an exception.
    """

    def verify(self, serialized_payload: bytes, signature: Union[str, bytes], public_key: str) -> bool:
        raw_signature = decode_signature(signature)
        if raw_signature is None:
            logger.debug('signature could not be decoded')
            return False
        try:
            pubkey = Pubkey.from_string(public_key)
            return Signature.from_bytes(raw_signature).verify(pubkey, serialized_payload)
        except Exception as exc:
            logger.debug('signature verification error: {}', exc)
            return False
