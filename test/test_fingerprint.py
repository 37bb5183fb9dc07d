"""Fingerprint generation and client IP resolution"""
import hashlib

from starlette.requests import Request

from app.usage.fingerprint import fingerprint_from_request, generate_fingerprint, get_client_ip


def build_request(headers=None, client=("10.0.0.9", 5000)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_fingerprint_is_first_16_hex_of_sha256():
    expected = hashlib.sha256(b"1.2.3.4-Mozilla/5.0-en-US-gzip").hexdigest()[:16]
    assert generate_fingerprint("1.2.3.4", "Mozilla/5.0", "en-US", "gzip") == expected


def test_missing_parts_become_unknown():
    expected = hashlib.sha256(b"unknown-unknown-unknown-unknown").hexdigest()[:16]
    assert generate_fingerprint(None, None, "", None) == expected


def test_fingerprint_is_deterministic_and_sensitive_to_input():
    first = generate_fingerprint("1.2.3.4", "ua", "en", "gzip")
    assert first == generate_fingerprint("1.2.3.4", "ua", "en", "gzip")
    assert first != generate_fingerprint("1.2.3.5", "ua", "en", "gzip")
    assert len(first) == 16


def test_client_ip_prefers_first_forwarded_hop():
    request = build_request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "X-Real-IP": "198.51.100.2"})
    assert get_client_ip(request) == "203.0.113.7"


def test_client_ip_falls_back_to_real_ip_then_peer():
    assert get_client_ip(build_request({"X-Real-IP": "198.51.100.2"})) == "198.51.100.2"
    assert get_client_ip(build_request()) == "10.0.0.9"


def test_client_ip_unknown_without_any_source():
    assert get_client_ip(build_request(client=None)) == "unknown"


def test_fingerprint_from_request_uses_headers():
    request = build_request({
        "X-Forwarded-For": "203.0.113.7",
        "User-Agent": "Mozilla/5.0",
        "Accept-Language": "en-US",
        "Accept-Encoding": "gzip",
    })
    assert fingerprint_from_request(request) == generate_fingerprint("203.0.113.7", "Mozilla/5.0", "en-US", "gzip")
