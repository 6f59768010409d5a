from helpdesk.webhook.signature import compute_body_signature, verify_webhook_secret


def test_plain_secret_matches():
    ok, _ = verify_webhook_secret("topsecret", presented_secret="topsecret")
    assert ok is True


def test_wrapping_quotes_are_ignored():
    ok, debug = verify_webhook_secret('"topsecret"', presented_secret="'topsecret'")
    assert ok is True
    assert debug["secret_len"] == len("topsecret")


def test_wrong_or_missing_secret_fails():
    assert verify_webhook_secret("topsecret", presented_secret="nope")[0] is False
    assert verify_webhook_secret("topsecret")[0] is False


def test_body_signature_with_and_without_prefix():
    body = b'{"event":"messages.upsert"}'
    sig = compute_body_signature("topsecret", body)
    assert verify_webhook_secret("topsecret", body=body, signature=sig)[0] is True
    assert verify_webhook_secret("topsecret", body=body, signature=f"sha256={sig}")[0] is True
    assert verify_webhook_secret("topsecret", body=body + b" ", signature=sig)[0] is False


def test_debug_info_never_contains_the_secret():
    _, debug = verify_webhook_secret("topsecret", presented_secret="topsecreX")
    assert "topsecret" not in str(debug)
