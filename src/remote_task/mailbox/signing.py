"""Detached SHA-512 signatures over task payloads and result payloads."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.types import (
    PrivateKeyTypes,
    PublicKeyTypes,
)

from remote_task.errors import ConfigurationError

SELF_TEST_PAYLOAD = b"test"


def sign(data: bytes, private_key: PrivateKeyTypes) -> bytes:
    """Sign ``data`` with a SHA-512 based scheme matching the key type."""

    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(data, padding.PKCS1v15(), hashes.SHA512())
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key.sign(data, ec.ECDSA(hashes.SHA512()))
    if isinstance(private_key, ed25519.Ed25519PrivateKey | ed448.Ed448PrivateKey):
        return private_key.sign(data)
    raise ConfigurationError(f"Unsupported private key type: {type(private_key).__name__}")


def verify(data: bytes, signature: bytes, public_key: PublicKeyTypes) -> bool:
    """Return whether ``signature`` is valid for ``data``; never raises."""

    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA512())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(hashes.SHA512()))
        elif isinstance(public_key, ed25519.Ed25519PublicKey | ed448.Ed448PublicKey):
            public_key.verify(signature, data)
        else:
            return False
    except (InvalidSignature, ValueError, TypeError, UnsupportedAlgorithm):
        return False
    return True


def self_test(
    private_key: PrivateKeyTypes,
    public_key: PublicKeyTypes,
    other_public_key: PublicKeyTypes,
) -> None:
    """Fail fast on a broken keypair or on own/counterpart keys being the same."""

    signature = sign(SELF_TEST_PAYLOAD, private_key)
    if not verify(SELF_TEST_PAYLOAD, signature, public_key):
        raise ConfigurationError(
            "Could not verify data signed by private key, make sure keypair is correct",
        )
    if verify(SELF_TEST_PAYLOAD, signature, other_public_key):
        raise ConfigurationError("Looks like client and server keys are the same")


@dataclass(frozen=True, slots=True)
class KeyMaterial:
    """Keys held by one role for the lifetime of a session or server."""

    private_key: PrivateKeyTypes
    public_key: PublicKeyTypes
    counterpart_public_key: PublicKeyTypes

    @classmethod
    def load(
        cls,
        *,
        private_key_path: Path,
        public_key_path: Path,
        counterpart_public_key_path: Path,
    ) -> KeyMaterial:
        """Read PEM files and run the self-test before returning."""

        material = cls(
            private_key=load_private_key(private_key_path),
            public_key=load_public_key(public_key_path),
            counterpart_public_key=load_public_key(counterpart_public_key_path),
        )
        material.validate()
        return material

    def validate(self) -> None:
        self_test(self.private_key, self.public_key, self.counterpart_public_key)

    def sign(self, data: bytes) -> bytes:
        return sign(data, self.private_key)

    def verify_counterpart(self, data: bytes, signature: bytes) -> bool:
        return verify(data, signature, self.counterpart_public_key)


def load_private_key(path: Path) -> PrivateKeyTypes:
    try:
        return serialization.load_pem_private_key(path.read_bytes(), password=None)
    except OSError as error:
        raise ConfigurationError(f"Cannot read private key {path}: {error}") from error
    except (ValueError, TypeError, UnsupportedAlgorithm) as error:
        raise ConfigurationError(f"Invalid private key {path}: {error}") from error


def load_public_key(path: Path) -> PublicKeyTypes:
    try:
        return serialization.load_pem_public_key(path.read_bytes())
    except OSError as error:
        raise ConfigurationError(f"Cannot read public key {path}: {error}") from error
    except (ValueError, UnsupportedAlgorithm) as error:
        raise ConfigurationError(f"Invalid public key {path}: {error}") from error
