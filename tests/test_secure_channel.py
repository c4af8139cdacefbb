import pytest

from conftest import SECRET
from core.key_exchange import offline_session
from core.secure_channel import NONCE_SIZE, ChannelOffline, DecryptionFailed, SecureChannel
from models.models import EncryptedEnvelope, Session


@pytest.fixture
def channel():
    return SecureChannel(Session("client-1", SECRET))


def test_round_trip(channel):
    envelope = channel.encrypt(b"cursor-size 48")
    assert envelope.client_id == "client-1"
    assert len(envelope.nonce) == NONCE_SIZE
    assert channel.decrypt(envelope) == b"cursor-size 48"


def test_nonces_are_fresh_per_message(channel):
    first = channel.encrypt(b"same")
    second = channel.encrypt(b"same")
    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext


def test_tampered_ciphertext_fails(channel):
    envelope = channel.encrypt(b"payload")
    flipped = bytes([envelope.ciphertext[0] ^ 0x01]) + envelope.ciphertext[1:]
    with pytest.raises(DecryptionFailed):
        channel.decrypt(EncryptedEnvelope(flipped, envelope.nonce, envelope.client_id))


def test_wrong_key_fails(channel):
    envelope = channel.encrypt(b"payload")
    other = SecureChannel(Session("client-1", bytes(32)))
    with pytest.raises(DecryptionFailed):
        other.decrypt(envelope)


def test_envelope_for_other_client_rejected(channel):
    other = SecureChannel(Session("client-2", SECRET))
    with pytest.raises(DecryptionFailed):
        channel.decrypt(other.encrypt(b"payload"))


def test_short_nonce_rejected(channel):
    envelope = channel.encrypt(b"payload")
    with pytest.raises(DecryptionFailed, match="Nonce"):
        channel.decrypt(EncryptedEnvelope(envelope.ciphertext, b"123", envelope.client_id))


def test_wire_json_round_trip(channel):
    wire = channel.encrypt_json({"preferences": {}}).to_wire()
    assert set(wire) == {"ciphertext_b64", "nonce_b64", "client_id"}
    assert channel.decrypt_wire(wire) == {"preferences": {}}


def test_malformed_wire_is_decryption_failure(channel):
    with pytest.raises(DecryptionFailed):
        channel.decrypt_wire({"ciphertext_b64": "abc"})
    with pytest.raises(DecryptionFailed):
        channel.decrypt_wire("not an envelope")


def test_offline_session_never_encrypts():
    channel = SecureChannel(offline_session())
    assert channel.offline
    assert channel.client_id.startswith("offline-")
    with pytest.raises(ChannelOffline):
        channel.encrypt(b"payload")
    with pytest.raises(ChannelOffline):
        channel.decrypt(EncryptedEnvelope(b"x" * 16, b"n" * NONCE_SIZE, channel.client_id))


def test_tampered_nonce_fails(channel):
    envelope = channel.encrypt(b"payload")
    flipped = bytes([envelope.nonce[0] ^ 0x80]) + envelope.nonce[1:]
    with pytest.raises(DecryptionFailed):
        channel.decrypt(EncryptedEnvelope(envelope.ciphertext, flipped, envelope.client_id))
