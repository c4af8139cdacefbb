"""Attune — Key Exchange Client

Runs the ML-KEM handshake against the preference service:

    POST /kem/initiate  {client_id}                 -> {public_key_b64}
    encapsulate(public_key)                         -> (secret, ciphertext)
    POST /kem/complete  {client_id, ciphertext_b64} -> 2xx

Every failure (network, missing/malformed key, encapsulation, non-2xx)
collapses into HandshakeFailed. The KEM primitive itself is an injected
capability; OqsKem backs it with liboqs in production.
"""

from __future__ import annotations
import asyncio
import base64
import logging
import uuid
from typing import Optional, Protocol, Tuple

import aiohttp

from models.models import AttuneError, Session

logger = logging.getLogger("attune.key_exchange")

OFFLINE_CLIENT_PREFIX = "offline-"
DEFAULT_KEM_ALGORITHM = "ML-KEM-512"


class HandshakeFailed(AttuneError):
    """The key exchange could not produce a shared secret."""


class Kem(Protocol):
    def encapsulate(self, public_key: bytes) -> Tuple[bytes, bytes]:
        """Return (shared_secret, ciphertext) for `public_key`."""
        ...


class OqsKem:
    """ML-KEM encapsulation through liboqs-python (installed with the `pq` extra)."""

    def __init__(self, algorithm: str = DEFAULT_KEM_ALGORITHM):
        self.algorithm = algorithm

    def encapsulate(self, public_key: bytes) -> Tuple[bytes, bytes]:
        import oqs  # imported lazily: loading liboqs is expensive

        with oqs.KeyEncapsulation(self.algorithm) as kem:
            ciphertext, shared_secret = kem.encap_secret(public_key)
        return bytes(shared_secret), bytes(ciphertext)


def offline_session() -> Session:
    """Explicit sentinel Session used when no handshake could complete."""
    return Session(
        client_id=f"{OFFLINE_CLIENT_PREFIX}{uuid.uuid4()}",
        shared_secret=b"",
        offline=True,
    )


class KeyExchangeClient:
    def __init__(self, kem: Kem, timeout: float = 15.0,
                 http: Optional[aiohttp.ClientSession] = None):
        self.kem = kem
        self.timeout = timeout
        self._http = http

    async def establish(self, server_url: str) -> Session:
        server_url = server_url.rstrip("/")
        client_id = str(uuid.uuid4())
        logger.info(f"Starting key exchange: client_id={client_id} server={server_url}")

        if self._http is not None:
            return await self._run(self._http, server_url, client_id)
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        ) as http:
            return await self._run(http, server_url, client_id)

    async def _run(self, http: aiohttp.ClientSession, server_url: str,
                   client_id: str) -> Session:
        public_key = await self._initiate(http, server_url, client_id)

        try:
            shared_secret, ciphertext = self.kem.encapsulate(public_key)
        except Exception as e:
            # liboqs raises plain RuntimeError/ImportError; all of it is a handshake failure
            logger.error(f"KEM encapsulation failed: {type(e).__name__}: {e}")
            raise HandshakeFailed(f"Encapsulation failed: {type(e).__name__}") from e

        await self._complete(http, server_url, client_id, ciphertext)

        try:
            session = Session(client_id=client_id, shared_secret=shared_secret)
        except ValueError as e:
            raise HandshakeFailed(str(e)) from e
        logger.info(f"Key exchange complete: client_id={client_id}")
        return session

    async def _initiate(self, http: aiohttp.ClientSession, server_url: str,
                        client_id: str) -> bytes:
        try:
            async with http.post(f"{server_url}/kem/initiate",
                                 json={"client_id": client_id}) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise HandshakeFailed(f"/kem/initiate returned status {resp.status}")
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise HandshakeFailed(f"/kem/initiate failed: {type(e).__name__}: {e}") from e

        public_key_b64 = body.get("public_key_b64") if isinstance(body, dict) else None
        if not isinstance(public_key_b64, str) or not public_key_b64:
            raise HandshakeFailed("public_key_b64 not found in /kem/initiate response")
        try:
            return base64.b64decode(public_key_b64, validate=True)
        except ValueError as e:
            raise HandshakeFailed("public_key_b64 is not valid base64") from e

    async def _complete(self, http: aiohttp.ClientSession, server_url: str,
                        client_id: str, ciphertext: bytes) -> None:
        payload = {
            "client_id": client_id,
            "ciphertext_b64": base64.b64encode(ciphertext).decode("ascii"),
        }
        try:
            async with http.post(f"{server_url}/kem/complete", json=payload) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise HandshakeFailed(f"/kem/complete returned status {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise HandshakeFailed(f"/kem/complete failed: {type(e).__name__}: {e}") from e
