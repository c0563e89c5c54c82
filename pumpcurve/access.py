"""
Signature-based access control for privileged calls.
"""
import logging
from typing import Iterable, Optional

import msgpack

from pumpcurve.crypto import public_key_to_address, verify_signature
from pumpcurve.errors import Unauthorized
from pumpcurve.interfaces import AccessControl

logger = logging.getLogger(__name__)

INITIALIZE_ACTION = "INITIALIZE"


def initialize_payload(treasury: bytes) -> bytes:
    """Canonical bytes an authority signs to initialize the registry."""
    return msgpack.packb({'action': INITIALIZE_ACTION, 'treasury': treasury},
                         use_bin_type=True)


class SignatureAccessControl(AccessControl):
    """
    Accepts a caller whose ECDSA signature verifies against its public key.

    When allowed_addresses is given, the derived address must also be in it.
    """

    def __init__(self, allowed_addresses: Optional[Iterable[bytes]] = None):
        self.allowed_addresses = set(allowed_addresses) if allowed_addresses is not None else None

    def verify_caller(self, public_key_pem: str, signature: bytes, payload: bytes) -> bytes:
        try:
            address = public_key_to_address(public_key_pem)
        except ValueError as e:
            raise Unauthorized(f"Malformed public key: {e}")

        if not signature or not verify_signature(public_key_pem, signature, payload):
            logger.warning(f"Rejected signature from {address.hex()}")
            raise Unauthorized("Invalid signature")

        if self.allowed_addresses is not None and address not in self.allowed_addresses:
            logger.warning(f"Caller {address.hex()} is not an allowed authority")
            raise Unauthorized()

        return address
