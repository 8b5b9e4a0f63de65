import pytest

from mfa_gateway.core import totp

# RFC 6238 appendix B, SHA1 seed "12345678901234567890", truncated to 6 digits.
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"
NOW = 1_700_000_010.0


@pytest.mark.parametrize("timestamp,expected", [
    (59, "287082"),
    (1111111109, "081804"),
    (1111111111, "050471"),
    (1234567890, "005924"),
    (2000000000, "279037"),
])
def test_generate_matches_rfc6238_vectors(timestamp, expected):
    assert totp.generate(RFC_SECRET, timestamp) == expected


def test_generate_is_zero_padded_six_digits():
    code = totp.generate(RFC_SECRET, 1234567890)
    assert len(code) == 6
    assert code.startswith("00")


def test_verify_self_consistent_with_no_window():
    secret = totp.random_secret()
    for ts in (0, 29, 30, NOW, NOW + 12345):
        assert totp.verify(secret, totp.generate(secret, ts), ts, window=0)


def test_time_step_uses_30_second_buckets():
    assert totp.time_step(0) == 0
    assert totp.time_step(29.9) == 0
    assert totp.time_step(30) == 1
    assert totp.time_step(NOW) == int(NOW // 30)


@pytest.mark.parametrize("offset_steps", [-2, -1, 0, 1, 2])
def test_verify_accepts_codes_within_default_window(offset_steps):
    code = totp.generate(SECRET, NOW)
    assert totp.verify(SECRET, code, NOW + offset_steps * 30)


@pytest.mark.parametrize("offset_steps", [-4, -3, 3, 4])
def test_verify_rejects_codes_outside_default_window(offset_steps):
    code = totp.generate(SECRET, NOW)
    assert not totp.verify(SECRET, code, NOW + offset_steps * 30)


def test_verify_window_zero_rejects_adjacent_step():
    code = totp.generate(SECRET, NOW)
    assert not totp.verify(SECRET, code, NOW + 30, window=0)


def test_verify_normalizes_noise_in_candidate():
    code = totp.generate(SECRET, NOW)
    noisy = f"{code[:2]} {code[2:4]}-{code[4:]}"
    assert totp.verify(SECRET, noisy, NOW)
    assert totp.normalize_code("12 3456") == "123456"


@pytest.mark.parametrize("candidate", ["", "12345", "1234567", "abcdef", "12 345", None])
def test_verify_rejects_wrong_length_after_stripping(candidate):
    assert totp.normalize_code(candidate) is None
    assert not totp.verify(SECRET, candidate, NOW)


def test_verify_rejects_wrong_code():
    code = totp.generate(SECRET, NOW)
    wrong = f"{(int(code) + 1) % 1_000_000:06d}"
    assert not totp.verify(SECRET, wrong, NOW, window=0)


def test_random_secret_is_valid_base32_of_160_bits():
    secret = totp.random_secret()
    assert len(secret) == 32
    assert totp.is_valid_secret(secret)
    assert secret != totp.random_secret()


def test_is_valid_secret_rejects_garbage():
    assert not totp.is_valid_secret("not base32 !!")
    assert not totp.is_valid_secret("")


def test_provisioning_uri_format():
    uri = totp.provisioning_uri(SECRET, "alice", "HTTPS Proxy Service")
    assert uri.startswith("otpauth://totp/")
    assert "alice" in uri
    assert f"secret={SECRET}" in uri
    assert "issuer=HTTPS%20Proxy%20Service" in uri


def test_time_info_reports_remaining_seconds():
    info = totp.time_info(60 + 12)
    assert info["time_step"] == 2
    assert info["time_remaining"] == 18
    assert info["step_duration"] == 30
