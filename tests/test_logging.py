from authgate.logging import _redact_pii, get_correlation_id, mask_email, set_correlation_id


class TestRedaction:
    def test_credentials_fully_redacted(self):
        event = _redact_pii(None, "info", {
            "event": "x",
            "refresh_token": "abcdefghijkl",
            "password": "hunter22",
            "mfa_code": "123456",
        })
        assert event["refresh_token"] == "[redacted]"
        assert event["password"] == "[redacted]"
        assert event["mfa_code"] == "[redacted]"
        assert event["event"] == "x"

    def test_counts_are_kept(self):
        event = _redact_pii(None, "info", {"backup_codes_remaining": 9})
        assert event["backup_codes_remaining"] == 9

    def test_email_keeps_domain(self):
        assert mask_email("alice@example.com") == "a***@example.com"
        event = _redact_pii(None, "info", {"detail": {"email": "bob@example.com"}})
        assert event["detail"]["email"] == "b***@example.com"


class TestCorrelationId:
    def test_generated_when_missing(self):
        generated = set_correlation_id()
        assert get_correlation_id() == generated

    def test_explicit_id_kept(self):
        assert set_correlation_id("req-7") == "req-7"
