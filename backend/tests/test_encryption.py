import pytest

from masa.core.encryption import (
    DecryptionFailed,
    EncryptionCodec,
    EncryptionUnavailable,
    serialize_payload,
)


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"name": "Jane Doe", "dateOfBirth": "1980-01-01", "mrn": "MRN-42"},
        {"patientInfo": {"name": "Zoë Ångström", "clinician": "Dr. Müller"}, "notes": "咽下 ok"},
        {"nested": {"deeper": {"list": [1, 2.5, None, True, "x"]}}},
        [1, "two", {"three": 3}],
        "plain string",
    ],
)
def test_round_trip(codec, payload):
    assert codec.decrypt(codec.encrypt(payload)) == payload


def test_ciphertext_is_prefixed_and_hides_plaintext(codec):
    token = codec.encrypt({"name": "Jane Doe"})
    assert token.startswith("enc:")
    assert "Jane" not in token


def test_tampered_ciphertext_fails(codec):
    token = codec.encrypt({"name": "Jane Doe"})
    body = token[len("enc:"):]
    flipped = body[:20] + ("A" if body[20] != "A" else "B") + body[21:]
    with pytest.raises(DecryptionFailed):
        codec.decrypt("enc:" + flipped)


def test_wrong_key_fails(codec):
    token = codec.encrypt({"name": "Jane Doe"})
    with pytest.raises(DecryptionFailed):
        EncryptionCodec("some-other-secret").decrypt(token)


@pytest.mark.parametrize("bad", ["not-encrypted", "enc:garbage", "", None, 42])
def test_malformed_input_fails(codec, bad):
    with pytest.raises(DecryptionFailed):
        codec.decrypt(bad)


def test_missing_key_never_falls_back_to_plaintext():
    codec = EncryptionCodec(None)
    assert not codec.available
    with pytest.raises(EncryptionUnavailable):
        codec.encrypt({"name": "Jane Doe"})
    with pytest.raises(EncryptionUnavailable):
        codec.decrypt("enc:anything")
    with pytest.raises(EncryptionUnavailable):
        codec.fingerprint("Jane Doe", "1980-01-01")


def test_serialization_is_deterministic():
    assert serialize_payload({"b": 1, "a": 2}) == serialize_payload({"a": 2, "b": 1})
    assert serialize_payload({"name": "Zoë"}) == '{"name":"Zoë"}'.encode("utf-8")


def test_fingerprint_is_stable_and_keyed(codec):
    first = codec.fingerprint("Jane Doe", "1980-01-01")
    assert first == codec.fingerprint("Jane Doe", "1980-01-01")
    assert first != codec.fingerprint("Jane Doe", "1980-01-02")
    assert first != EncryptionCodec("some-other-secret").fingerprint("Jane Doe", "1980-01-01")
