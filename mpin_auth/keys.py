from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, TypeVar

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

DEFAULT_KEYS_DIR = ".keys"
DEFAULT_PRIVATE_KEY_FILENAME = "private.pem"
DEFAULT_PUBLIC_KEY_FILENAME = "public.pem"
DEFAULT_KEY_SIZE = 2048
MIN_KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537

logger = logging.getLogger("mpin_auth.keys")

T = TypeVar("T")


class KeyCustodyError(RuntimeError):
    """Raised when the transport key pair can be neither loaded nor generated."""


@dataclass(frozen=True)
class KeyConfig:
    keys_dir: Path
    private_key_filename: str = DEFAULT_PRIVATE_KEY_FILENAME
    public_key_filename: str = DEFAULT_PUBLIC_KEY_FILENAME
    key_size: int = DEFAULT_KEY_SIZE

    def __post_init__(self) -> None:
        if self.key_size < MIN_KEY_SIZE:
            raise ValueError(f"MPIN_RSA_KEY_SIZE must be at least {MIN_KEY_SIZE}.")
        if not self.private_key_filename or not self.public_key_filename:
            raise ValueError("Key filenames must not be empty.")
        if self.private_key_filename == self.public_key_filename:
            raise ValueError("Private and public key filenames must differ.")

    @property
    def private_key_path(self) -> Path:
        return self.keys_dir / self.private_key_filename

    @property
    def public_key_path(self) -> Path:
        return self.keys_dir / self.public_key_filename

    @classmethod
    def from_env(cls) -> "KeyConfig":
        keys_dir = os.getenv("MPIN_KEYS_DIR", DEFAULT_KEYS_DIR).strip() or DEFAULT_KEYS_DIR
        private_name = os.getenv("MPIN_PRIVATE_KEY_FILENAME", DEFAULT_PRIVATE_KEY_FILENAME).strip()
        public_name = os.getenv("MPIN_PUBLIC_KEY_FILENAME", DEFAULT_PUBLIC_KEY_FILENAME).strip()
        raw_key_size = os.getenv("MPIN_RSA_KEY_SIZE", str(DEFAULT_KEY_SIZE)).strip()
        try:
            key_size = int(raw_key_size)
        except ValueError as exc:
            raise ValueError("MPIN_RSA_KEY_SIZE must be an integer value.") from exc

        return cls(
            keys_dir=Path(keys_dir),
            private_key_filename=private_name,
            public_key_filename=public_name,
            key_size=key_size,
        )


def _write_artifact(path: Path, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    try:
        with os.fdopen(fd, "wb") as artifact_file:
            artifact_file.write(data)
    except OSError:
        path.unlink(missing_ok=True)
        raise


class KeyCustodian:
    """Owns the RSA key pair used to protect MPINs in transit.

    The pair is generated once per deployment and reloaded on every restart.
    Callers only ever see the public half; the private key is lent to a
    callback through :meth:`with_private_key` and never returned.
    """

    def __init__(self, config: KeyConfig) -> None:
        self._config = config
        self._private_key: rsa.RSAPrivateKey | None = None
        self._public_pem: bytes | None = None
        self._load_lock = Lock()

    def load_or_generate(self) -> None:
        with self._load_lock:
            if self._private_key is not None:
                return

            private_path = self._config.private_key_path
            public_path = self._config.public_key_path
            private_exists = private_path.exists()
            public_exists = public_path.exists()

            if private_exists and public_exists:
                self._private_key, self._public_pem = self._load(private_path, public_path)
                logger.info("transport_keys_loaded keys_dir=%s", self._config.keys_dir)
                return

            if private_exists or public_exists:
                raise KeyCustodyError(
                    f"Incomplete key pair in {self._config.keys_dir}: "
                    "both private and public artifacts are required."
                )

            self._private_key, self._public_pem = self._generate(private_path, public_path)
            logger.info(
                "transport_keys_generated keys_dir=%s key_size=%s",
                self._config.keys_dir,
                self._config.key_size,
            )

    @staticmethod
    def _load(private_path: Path, public_path: Path) -> tuple[rsa.RSAPrivateKey, bytes]:
        try:
            private_key = serialization.load_pem_private_key(private_path.read_bytes(), password=None)
            public_key = serialization.load_pem_public_key(public_path.read_bytes())
        except (OSError, ValueError, TypeError) as exc:
            raise KeyCustodyError(f"Failed to load transport key pair from {private_path.parent}.") from exc

        if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(public_key, rsa.RSAPublicKey):
            raise KeyCustodyError("Persisted transport keys are not an RSA key pair.")
        if private_key.public_key().public_numbers() != public_key.public_numbers():
            raise KeyCustodyError("Persisted public key does not match the private key.")

        public_pem = public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return private_key, public_pem

    def _generate(self, private_path: Path, public_path: Path) -> tuple[rsa.RSAPrivateKey, bytes]:
        private_key = rsa.generate_private_key(
            public_exponent=PUBLIC_EXPONENT,
            key_size=self._config.key_size,
        )
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

        written: list[Path] = []
        try:
            self._config.keys_dir.mkdir(parents=True, exist_ok=True)
            for path, data, mode in ((private_path, private_pem, 0o600), (public_path, public_pem, 0o644)):
                _write_artifact(path, data, mode)
                written.append(path)
        except OSError as exc:
            # Leave both artifacts or neither.
            for path in written:
                path.unlink(missing_ok=True)
            raise KeyCustodyError(
                f"Failed to persist transport key pair to {self._config.keys_dir}."
            ) from exc

        return private_key, public_pem

    def public_key(self) -> bytes:
        if self._public_pem is None:
            self.load_or_generate()
        return self._public_pem  # type: ignore[return-value]

    def public_key_pem(self) -> str:
        return self.public_key().decode("ascii")

    def with_private_key(self, fn: Callable[[rsa.RSAPrivateKey], T]) -> T:
        if self._private_key is None:
            self.load_or_generate()
        return fn(self._private_key)  # type: ignore[arg-type]
