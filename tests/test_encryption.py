"""Tests: EncryptionCodec round-trip, envelope shape and failure modes."""

import logging

import pytest

from chat_server.exception import DecryptionError, ValidationError
from chat_server.security import encryption
from chat_server.security.encryption import EncryptionCodec

from tests.conftest import OTHER_KEY, TEST_KEY


@pytest.mark.parametrize("plaintext", ["hello", "", "a" * 16, "zażółć gęślą jaźń 🚀", "line\nbreak: colon"])
def test_round_trip(codec, plaintext):
    assert codec.decrypt(codec.encrypt(plaintext)) == plaintext


def test_same_plaintext_gives_distinct_envelopes(codec):
    first, second = codec.encrypt("hello"), codec.encrypt("hello")
    assert first != second
    assert codec.decrypt(first) == codec.decrypt(second) == "hello"


def test_envelope_is_iv_hex_colon_ciphertext_hex(codec):
    envelope = codec.encrypt("hello")
    iv_hex, ct_hex = envelope.split(":")
    assert len(iv_hex) == 32
    assert len(bytes.fromhex(ct_hex)) % 16 == 0


@pytest.mark.parametrize("envelope", [
    "",
    "no-delimiter",
    "aa:bb:cc",
    "zz" * 16 + ":" + "00" * 16,
    "00" * 8 + ":" + "00" * 16,
    "00" * 16 + ":" + "00" * 15,
    "00" * 16 + ":",
])
def test_malformed_envelope_raises(codec, envelope):
    with pytest.raises(DecryptionError):
        codec.decrypt(envelope)


def test_wrong_key_raises(codec):
    envelope = codec.encrypt("secret message")
    with pytest.raises(DecryptionError):
        EncryptionCodec(OTHER_KEY).decrypt(envelope)


def test_key_accepts_bytes_and_rejects_bad_length():
    assert EncryptionCodec(bytes.fromhex(TEST_KEY)).decrypt(EncryptionCodec(TEST_KEY).encrypt("x")) == "x"
    with pytest.raises(ValueError):
        EncryptionCodec("abcd")
    with pytest.raises(ValueError):
        EncryptionCodec("not hex at all")


def test_ephemeral_key_warns_once(monkeypatch, caplog):
    monkeypatch.setattr(encryption, "_ephemeral_warned", False)
    with caplog.at_level(logging.WARNING, logger=encryption.__name__):
        first = EncryptionCodec()
        second = EncryptionCodec(None)

    assert first.ephemeral and second.ephemeral
    warnings = [r for r in caplog.records if "EPHEMERAL" in r.getMessage()]
    assert len(warnings) == 1


def test_generated_key_is_usable():
    key = EncryptionCodec.generate_key()
    assert len(key) == 64
    codec = EncryptionCodec(key)
    assert not codec.ephemeral
    assert codec.decrypt(codec.encrypt("ok")) == "ok"


def test_unencodable_plaintext_is_a_validation_error(codec):
    with pytest.raises(ValidationError):
        codec.encrypt("hi \ud800")
