"""Attune — Secure Channel

AES-GCM transport keyed by the shared secret from the key exchange.

- A fresh random 96-bit nonce is drawn for every encrypt call
- The envelope's client_id is bound as associated data, so an envelope
  replayed under another client id fails authentication
- Every failure mode of decrypt surfaces as DecryptionFailed; corrupted
  plaintext is never returned
- An offline Session gets no cipher at all: every call raises ChannelOffline
"""

from __future__ import annotations
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from models.models import AttuneError, EncryptedEnvelope, Session

logger = logging.getLogger("attune.secure_channel")

NONCE_SIZE = 12


class DecryptionFailed(AttuneError):
    """Tag mismatch, malformed envelope, or wrong key."""


class ChannelOffline(AttuneError):
    """The session is the offline sentinel; nothing can be encrypted."""


class SecureChannel:
    def __init__(self, session: Session):
        self._session = session
        self._aead = None if session.offline else AESGCM(session.shared_secret)

    @property
    def client_id(self) -> str:
        return self._session.client_id

    @property
    def offline(self) -> bool:
        return self._session.offline

    def _require_online(self) -> AESGCM:
        if self._aead is None:
            raise ChannelOffline(
                f"Session {self._session.client_id} is offline; secure channel unavailable"
            )
        return self._aead

    def encrypt(self, plaintext: bytes) -> EncryptedEnvelope:
        aead = self._require_online()
        nonce = os.urandom(NONCE_SIZE)
        client_id = self._session.client_id
        ciphertext = aead.encrypt(nonce, plaintext, client_id.encode("utf-8"))
        return EncryptedEnvelope(ciphertext=ciphertext, nonce=nonce, client_id=client_id)

    def decrypt(self, envelope: EncryptedEnvelope) -> bytes:
        aead = self._require_online()
        if envelope.client_id != self._session.client_id:
            raise DecryptionFailed("Envelope was issued for a different client")
        if len(envelope.nonce) != NONCE_SIZE:
            raise DecryptionFailed(f"Nonce must be {NONCE_SIZE} bytes, got {len(envelope.nonce)}")
        try:
            return aead.decrypt(envelope.nonce, envelope.ciphertext,
                                envelope.client_id.encode("utf-8"))
        except InvalidTag:
            raise DecryptionFailed("Authentication tag mismatch") from None

    def encrypt_json(self, payload: Any) -> EncryptedEnvelope:
        return self.encrypt(json.dumps(payload).encode("utf-8"))

    def decrypt_wire(self, data: Any) -> Any:
        """Decrypt a wire envelope dict and decode its JSON plaintext."""
        try:
            envelope = EncryptedEnvelope.from_wire(data)
        except ValueError as e:
            raise DecryptionFailed(str(e)) from e
        plaintext = self.decrypt(envelope)
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
            raise DecryptionFailed(f"Decrypted payload is not JSON: {type(e).__name__}") from e
