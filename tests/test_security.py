from datamart.core.security import (
    create_session_cookie,
    load_session_cookie,
    sign_paystack_payload,
    verify_paystack_signature,
)


def test_session_cookie_roundtrip():
    cookie = create_session_cookie({"user_id": "abc", "session_version": 2})
    assert load_session_cookie(cookie) == {"user_id": "abc", "session_version": 2}


def test_tampered_cookie_rejected():
    cookie = create_session_cookie({"user_id": "abc"})
    assert load_session_cookie(cookie[:-2] + "xx") is None


def test_paystack_signature():
    body = b'{"event":"charge.success"}'
    sig = sign_paystack_payload(body, "sk_live")
    assert len(sig) == 128
    assert verify_paystack_signature(body, sig, "sk_live")
    assert not verify_paystack_signature(body + b" ", sig, "sk_live")
    assert not verify_paystack_signature(body, sig, "")
    assert not verify_paystack_signature(body, None, "sk_live")
