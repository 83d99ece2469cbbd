from pesapal_service.services.signing import canonical_json, sign_metadata, verify_metadata_signature

METADATA = {"type": "credit_purchase", "agentId": "A1", "credits": 50, "amount": 500}


def test_signature_ignores_key_order():
    reordered = {"amount": 500, "credits": 50, "agentId": "A1", "type": "credit_purchase"}
    assert sign_metadata(METADATA, "s") == sign_metadata(reordered, "s")


def test_canonical_json_matches_javascript_stringify():
    # JSON.stringify of the key-sorted object, as the checkout produced it
    assert canonical_json({"b": 1, "a": {"d": 500.0, "c": [1.5, 2.0]}}) == b'{"a":{"c":[1.5,2],"d":500},"b":1}'


def test_verify_accepts_own_signature():
    sig = sign_metadata(METADATA, "secret")
    assert len(sig) == 64
    assert verify_metadata_signature(METADATA, sig, "secret")
    assert verify_metadata_signature(METADATA, sig.upper(), "secret")


def test_verify_rejects_tampered_metadata():
    sig = sign_metadata(METADATA, "secret")
    tampered = dict(METADATA, credits=500)
    assert not verify_metadata_signature(tampered, sig, "secret")


def test_verify_rejects_wrong_secret_and_missing_signature():
    sig = sign_metadata(METADATA, "secret")
    assert not verify_metadata_signature(METADATA, sig, "other")
    assert not verify_metadata_signature(METADATA, None, "secret")
    assert not verify_metadata_signature(METADATA, "", "secret")
    assert not verify_metadata_signature(METADATA, "nöt-hex", "secret")
