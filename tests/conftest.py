"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

from remote_task.config import (
    CommandSettings,
    KeySettings,
    ProtocolSettings,
    Settings,
    StoreSettings,
)
from remote_task.store import DirectoryObjectStore

HELLO_COMMAND = f"{shlex.quote(sys.executable)} -m remote_task.command.hello"
FAILING_COMMAND = f"{HELLO_COMMAND} --fail"


@dataclass(slots=True)
class KeyFiles:
    client_private: Path
    client_public: Path
    server_private: Path
    server_public: Path
    rogue_private: Path
    rogue_public: Path


def write_keypair(directory: Path, name: str, key: PrivateKeyTypes) -> tuple[Path, Path]:
    private_path = directory / f"{name}.key"
    public_path = directory / f"{name}.pub"
    private_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )
    public_path.write_bytes(
        key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ),
    )
    return private_path, public_path


@pytest.fixture(scope="session")
def rsa_keys() -> dict[str, rsa.RSAPrivateKey]:
    return {
        name: rsa.generate_private_key(public_exponent=65537, key_size=2048)
        for name in ("client", "server", "rogue")
    }


@pytest.fixture()
def key_files(tmp_path: Path, rsa_keys: dict[str, rsa.RSAPrivateKey]) -> KeyFiles:
    key_dir = tmp_path / "keys"
    key_dir.mkdir()
    client_private, client_public = write_keypair(key_dir, "client", rsa_keys["client"])
    server_private, server_public = write_keypair(key_dir, "server", rsa_keys["server"])
    rogue_private, rogue_public = write_keypair(key_dir, "rogue", rsa_keys["rogue"])
    return KeyFiles(
        client_private=client_private,
        client_public=client_public,
        server_private=server_private,
        server_public=server_public,
        rogue_private=rogue_private,
        rogue_public=rogue_public,
    )


@pytest.fixture()
def store(tmp_path: Path) -> DirectoryObjectStore:
    return DirectoryObjectStore(tmp_path / "store")


@pytest.fixture()
def settings(tmp_path: Path, key_files: KeyFiles, store: DirectoryObjectStore) -> Settings:
    return Settings(
        store=StoreSettings(url=str(store.root)),
        keys=KeySettings(
            client_private_key=key_files.client_private,
            client_public_key=key_files.client_public,
            server_private_key=key_files.server_private,
            server_public_key=key_files.server_public,
        ),
        protocol=ProtocolSettings(
            poll_millis=10,
            task_expiration_millis=60_000,
            command_retries=0,
        ),
        command=CommandSettings(
            command=HELLO_COMMAND,
            timeout_seconds=60,
            workdir=tmp_path / "work",
        ),
    )


class FakeClock:
    """Deterministic wall clock; ``sleep`` advances it instead of blocking."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
