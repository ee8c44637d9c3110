"""
Cryptographic primitives.

Each device owns an RSA keypair. The project's symmetric key is wrapped for
each device with RSA-OAEP, and secret files are sealed with AES-256-GCM using
a fresh random nonce for every encryption:

    wrapped key = RSA-OAEP(SHA-256)(public key, symmetric key)
    ciphertext  = [nonce 12B][AES-GCM payload + tag 16B]

Library exceptions never escape this module: failures are reported as
DecryptionFailed, AuthenticationFailed or InvalidKey. Never log key material
or plaintext.
"""

import hashlib
import logging
import os
import typing

import attr
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailed, DecryptionFailed, InvalidKey, PassphraseRequired

log = logging.getLogger(__name__)

KEY_SIZE = 2048
SYMMETRIC_KEY_LENGTH = 32  # AES-256
NONCE_SIZE = 12
TAG_SIZE = 16

PrivateKey = rsa.RSAPrivateKey
PublicKey = rsa.RSAPublicKey

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None)


@attr.s(frozen=True)
class KeyPair:
    private: PrivateKey = attr.ib(repr=False)
    public: PublicKey = attr.ib()

    @classmethod
    def from_private(cls, private: PrivateKey) -> 'KeyPair':
        return cls(private=private, public=private.public_key())

    def private_pem(self) -> bytes:
        return self.private.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption())

    def public_pem(self) -> bytes:
        return public_pem(self.public)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.public)


def generate_keypair() -> KeyPair:
    log.debug(f"Generating a {KEY_SIZE}-bit RSA keypair")
    return KeyPair.from_private(rsa.generate_private_key(
        public_exponent=65537,
        key_size=KEY_SIZE))


def generate_symmetric_key() -> bytes:
    return os.urandom(SYMMETRIC_KEY_LENGTH)


def public_pem(public: PublicKey) -> bytes:
    return public.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo)


def fingerprint(public: PublicKey) -> str:
    der = public.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo)
    return hashlib.sha256(der).hexdigest()


def wrap(symmetric_key: bytes, public: PublicKey) -> bytes:
    """Encrypt the project's symmetric key for one device."""
    return public.encrypt(symmetric_key, _OAEP)


def unwrap(wrapped: bytes, private: PrivateKey) -> bytes:
    """
    Recover the project's symmetric key from a device's wrapped key.

    Raises:
        DecryptionFailed: If the key does not belong to this device or the
            wrapped key has been damaged.
    """
    try:
        symmetric_key = private.decrypt(wrapped, _OAEP)
    except (ValueError, TypeError):
        raise DecryptionFailed("wrapped key") from None
    if len(symmetric_key) != SYMMETRIC_KEY_LENGTH:
        raise DecryptionFailed("wrapped key")
    return symmetric_key


def sym_encrypt(plaintext: bytes, key: bytes) -> bytes:
    """
    Encrypt plaintext under the project key.

    Format: [nonce 12B][encrypted payload + GCM tag 16B]
    """
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def sym_decrypt(ciphertext: bytes, key: bytes) -> bytes:
    """
    Decrypt and authenticate ciphertext produced by sym_encrypt.

    Raises:
        AuthenticationFailed: If the tag does not verify - the ciphertext was
            sealed with another key, truncated or tampered with.
    """
    if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
        raise AuthenticationFailed()
    try:
        cipher = AESGCM(key)
        return cipher.decrypt(ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:], None)
    except (InvalidTag, ValueError):
        raise AuthenticationFailed() from None


def load_private_key(data: bytes, passphrase: typing.Optional[bytes] = None) -> PrivateKey:
    """
    Parse an RSA private key.

    Accepts PEM (PKCS#1 or PKCS#8) and OpenSSH private keys.
    """
    data = data.strip()
    if not data.startswith(b'-----BEGIN'):
        raise InvalidKey("private key is not PEM or OpenSSH encoded")

    if b'OPENSSH PRIVATE KEY' in data.splitlines()[0]:
        loader = serialization.load_ssh_private_key
    else:
        loader = serialization.load_pem_private_key

    try:
        key = loader(data, password=passphrase)
    except TypeError:
        # Raised both for a missing passphrase and for one given to a plain key.
        if passphrase is None:
            raise PassphraseRequired() from None
        raise InvalidKey("a passphrase was given but the key is not encrypted") from None
    except ValueError:
        if passphrase is not None:
            raise InvalidKey("incorrect passphrase or damaged key") from None
        raise InvalidKey("could not parse private key") from None
    except UnsupportedAlgorithm:
        raise InvalidKey("unsupported private key algorithm") from None

    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidKey(f"only RSA keys are supported, not {type(key).__name__}")
    return key


def load_public_key(data: bytes) -> PublicKey:
    """
    Parse an RSA public key.

    Accepts PEM SubjectPublicKeyInfo and single line OpenSSH ('ssh-rsa ...')
    public keys.
    """
    data = data.strip()
    try:
        if data.startswith(b'ssh-'):
            key = serialization.load_ssh_public_key(data)
        elif data.startswith(b'-----BEGIN'):
            key = serialization.load_pem_public_key(data)
        else:
            raise InvalidKey("public key is not PEM or OpenSSH encoded")
    except (ValueError, UnsupportedAlgorithm):
        raise InvalidKey("could not parse public key") from None

    if not isinstance(key, rsa.RSAPublicKey):
        raise InvalidKey(f"only RSA keys are supported, not {type(key).__name__}")
    if key.key_size < KEY_SIZE:
        raise InvalidKey(f"RSA keys must be at least {KEY_SIZE} bits, not {key.key_size}")
    return key
