"""
Authority keys: ECDSA on P-256 over SHA-256.

An address is the first 20 bytes of SHA-256 over the DER-encoded public key.
"""
import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

ADDRESS_LENGTH = 20
_SIGNATURE_ALGORITHM = ec.ECDSA(hashes.SHA256())


def generate_key_pair() -> tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    private_key = ec.generate_private_key(ec.SECP256R1())
    return private_key, private_key.public_key()


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """PEM text of a public key, the form callers present to access control."""
    pem = public_key.public_bytes(serialization.Encoding.PEM,
                                  serialization.PublicFormat.SubjectPublicKeyInfo)
    return pem.decode('utf-8')


def deserialize_public_key(pem_data: str) -> ec.EllipticCurvePublicKey:
    key = serialization.load_pem_public_key(pem_data.encode('utf-8'))
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise ValueError("Authority keys must be elliptic curve keys")
    return key


def public_key_to_address(public_key_pem: str) -> bytes:
    der = deserialize_public_key(public_key_pem).public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return hashlib.sha256(der).digest()[:ADDRESS_LENGTH]


def sign(private_key: ec.EllipticCurvePrivateKey, data: bytes) -> bytes:
    return private_key.sign(data, _SIGNATURE_ALGORITHM)


def verify_signature(public_key_pem: str, signature: bytes, data: bytes) -> bool:
    """False for a bad signature or an unreadable key, never raises."""
    try:
        deserialize_public_key(public_key_pem).verify(signature, data, _SIGNATURE_ALGORITHM)
    except (InvalidSignature, ValueError):
        return False
    return True
