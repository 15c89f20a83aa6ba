"""Crypto Primitives - Fixed algorithm choices behind small functions

Self-Explanatory: AES-256-GCM, RSA-OAEP-SHA256, RSA-SHA256 signatures, SHA-256.
Why: Every engine in the service must agree on nonce sizes, padding and
     encodings; nobody above this module picks an algorithm.
How: Thin wrappers over `cryptography` hazmat + AESGCM that raise
     KeyMaterialError / DecryptionError instead of library exceptions.
"""

import base64
import hashlib
import os
from typing import Tuple

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from consentbridge.errors import DecryptionError, KeyMaterialError

AES_KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16
RSA_KEY_BITS = 2048

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def generate_aes_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def random_iv() -> bytes:
    return os.urandom(IV_BYTES)


def aes_gcm_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    """Seal plaintext

    Returns:
        (ciphertext, auth_tag)
    """
    if len(key) != AES_KEY_BYTES:
        raise KeyMaterialError("AES key must be 32 bytes")
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]


def aes_gcm_decrypt(
    key: bytes, iv: bytes, ciphertext: bytes, auth_tag: bytes, stage: str = "payload"
) -> bytes:
    """Open sealed data; any failure surfaces as DecryptionError(stage)"""
    if len(key) != AES_KEY_BYTES:
        raise DecryptionError(stage, "AES key must be 32 bytes")
    if len(auth_tag) != TAG_BYTES:
        raise DecryptionError(stage, "authentication tag must be 16 bytes")
    try:
        return AESGCM(key).decrypt(iv, ciphertext + auth_tag, None)
    except InvalidTag:
        raise DecryptionError(stage, "authentication tag mismatch")
    except ValueError as e:
        raise DecryptionError(stage, str(e))


def generate_rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_BITS)


def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def public_key_to_pem(public_key: rsa.RSAPublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


def normalize_public_key_pem(key: str) -> str:
    """Accept a full PEM or a bare base64 body and return a PEM"""
    key = key.strip()
    if key.startswith("-----BEGIN"):
        return key
    body = "".join(key.split())
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return "-----BEGIN PUBLIC KEY-----\n" + "\n".join(lines) + "\n-----END PUBLIC KEY-----"


def load_public_key(pem: str) -> rsa.RSAPublicKey:
    if not pem or not pem.strip():
        raise KeyMaterialError("Public key is empty")
    try:
        key = serialization.load_pem_public_key(
            normalize_public_key_pem(pem).encode("utf-8")
        )
    except (ValueError, TypeError) as e:
        raise KeyMaterialError(f"Malformed public key: {e}")
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyMaterialError("Public key is not an RSA key")
    return key


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    if not pem or not pem.strip():
        raise KeyMaterialError("Private key is empty")
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise KeyMaterialError(f"Malformed private key: {e}")
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyMaterialError("Private key is not an RSA key")
    return key


def rsa_oaep_encrypt(public_key: rsa.RSAPublicKey, data: bytes) -> bytes:
    return public_key.encrypt(data, _OAEP)


def rsa_oaep_decrypt(private_key: rsa.RSAPrivateKey, data: bytes, stage: str = "key_unwrap") -> bytes:
    try:
        return private_key.decrypt(data, _OAEP)
    except ValueError as e:
        raise DecryptionError(stage, str(e))


def rsa_sign(private_key: rsa.RSAPrivateKey, data: bytes) -> str:
    """PKCS#1 v1.5 / SHA-256 signature, base64 encoded"""
    signature = private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("utf-8")


def rsa_verify(public_key: rsa.RSAPublicKey, data: bytes, signature_b64: str) -> bool:
    try:
        signature = base64.b64decode(signature_b64, validate=True)
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def b64decode(data: str, stage: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (ValueError, TypeError) as e:
        raise DecryptionError(stage, f"invalid base64: {e}")
