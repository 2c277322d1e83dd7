"""
Signing key material for ID tokens and signed access tokens.
"""

import hashlib
import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import Request
from jwt.algorithms import RSAAlgorithm
from loguru import logger

from gatehouse.config import settings
from gatehouse.constants import JWT_ALGORITHM

PRIVATE_KEY_FILE = "jwt-private.pem"
PUBLIC_KEY_FILE = "jwt-public.pem"


def generate_key_pair() -> tuple[bytes, bytes]:
    """Generate a fresh RSA-2048 key pair as (private PEM, public PEM)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


class KeyManager:
    """
    Owns the RS256 signing key. The pair is read from ``keys_dir`` and
    generated on first use; it never changes for the lifetime of the process.
    """

    def __init__(self, keys_dir: Path):
        self.keys_dir = Path(keys_dir)
        private_pem, public_pem = self._load_or_generate()
        self.private_pem = private_pem
        self.public_pem = public_pem
        self._private_key = serialization.load_pem_private_key(private_pem, password=None)
        self._public_key = serialization.load_pem_public_key(public_pem)
        self.kid = hashlib.sha256(public_pem).hexdigest()[:16]

    def _load_or_generate(self) -> tuple[bytes, bytes]:
        private_path = self.keys_dir / PRIVATE_KEY_FILE
        public_path = self.keys_dir / PUBLIC_KEY_FILE
        if private_path.exists() and public_path.exists():
            return private_path.read_bytes(), public_path.read_bytes()

        logger.info(f"Generating new JWT signing keys in {self.keys_dir}")
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        private_pem, public_pem = generate_key_pair()
        fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as outfile:
            outfile.write(private_pem)
        public_path.write_bytes(public_pem)
        return private_pem, public_pem

    def sign(self, claims: dict) -> str:
        return jwt.encode(
            claims,
            self._private_key,
            algorithm=JWT_ALGORITHM,
            headers={"kid": self.kid},
        )

    def verify(self, token: str, audience: Optional[str] = None) -> dict:
        """
        Verify a token signed by this key. Raises ``jwt.InvalidTokenError``.
        """
        options = {"require": ["exp", "iat", "sub"]}
        if audience is None:
            options["verify_aud"] = False
        return jwt.decode(
            token,
            self._public_key,
            algorithms=[JWT_ALGORITHM],
            audience=audience,
            options=options,
        )

    def jwks(self) -> dict:
        jwk = json.loads(RSAAlgorithm.to_jwk(self._public_key))
        jwk.update({"kid": self.kid, "use": "sig", "alg": JWT_ALGORITHM})
        return {"keys": [jwk]}


@lru_cache()
def get_key_manager() -> KeyManager:
    return KeyManager(settings.keys_dir)


def get_keys(request: Request) -> KeyManager:
    """FastAPI dependency returning the application's key manager."""
    return request.app.state.keys
