"""Tests for verification code delivery over email and SMS."""

import smtplib

import httpx
import pytest

from kleroteria.service.email import EmailService
from kleroteria.service.errors import SendError
from kleroteria.service.notifications import NotificationDispatcher, build_dispatcher
from kleroteria.service.sms import SmsService
from kleroteria.storage.models import TokenPurpose


class FakeSMTP:
    """Stand-in for smtplib.SMTP that records what would be sent."""

    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = user

    def sendmail(self, from_addr, to_addr, message):
        self.messages.append((from_addr, to_addr, message))


class RefusingSMTP(FakeSMTP):
    def __init__(self, host, port, timeout=None):
        raise ConnectionRefusedError("connection refused")


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _email_service(**overrides):
    options = {
        "smtp_host": "smtp.example.com",
        "smtp_user": "mailer",
        "smtp_password": "hunter2",
        "from_email": "no-reply@example.com",
        "from_name": "Kleroteria",
    }
    options.update(overrides)
    return EmailService(**options)


class TestEmailService:
    def test_unconfigured_service_logs_instead(self):
        service = EmailService()

        assert service.is_configured is False
        assert service.send_verification_code("ada@example.com", "ABC123") is True

    def test_sends_over_starttls(self, fake_smtp):
        service = _email_service()

        assert service.send_verification_code(
            "ada@example.com", "ABC123", first_name="Ada", ttl_minutes=10
        )

        server = fake_smtp.instances[0]
        assert server.started_tls is True
        assert server.logged_in == "mailer"
        from_addr, to_addr, message = server.messages[0]
        assert from_addr == "no-reply@example.com"
        assert to_addr == "ada@example.com"
        assert "Subject: Email Verification Code" in message
        assert "Resent" not in message

    def test_resend_subject(self, fake_smtp):
        _email_service().send_verification_code("ada@example.com", "ABC123", resent=True)

        message = fake_smtp.instances[0].messages[0][2]
        assert "Subject: Email Verification Code - Resent" in message

    def test_body_carries_code_and_greeting(self):
        service = _email_service()
        captured = {}

        def _capture(to_email, subject, html_body, text_body):
            captured.update(html=html_body, text=text_body)
            return True

        service._send_email = _capture
        service.send_verification_code("ada@example.com", "XYZ789", first_name="Ada")

        assert "XYZ789" in captured["text"]
        assert "Hello Ada," in captured["text"]
        assert "expire in 10 minutes" in captured["text"]
        assert "The Kleroteria Team" in captured["text"]
        assert "XYZ789" in captured["html"]

    def test_connection_failure_returns_false(self, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)

        assert _email_service().send_verification_code("ada@example.com", "ABC123") is False


def _sms_service(handler, **overrides):
    options = {
        "api_url": "https://sms.example.com/Accounts/AC1/Messages.json",
        "account_sid": "AC1",
        "auth_token": "secret",
        "from_number": "+15559999",
        "transport": httpx.MockTransport(handler),
    }
    options.update(overrides)
    return SmsService(**options)


class TestSmsService:
    async def test_unconfigured_service_logs_instead(self):
        service = SmsService()

        assert service.is_configured is False
        assert await service.send_verification_code("+15550001", "ABC123") is True

    async def test_posts_form_with_basic_auth(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"sid": "SM1"})

        service = _sms_service(handler)

        assert await service.send_verification_code("+15550001", "ABC123") is True

        request = requests[0]
        assert request.method == "POST"
        assert request.headers["authorization"].startswith("Basic ")
        form = dict(httpx.QueryParams(request.content.decode()))
        assert form["To"] == "+15550001"
        assert form["From"] == "+15559999"
        assert "ABC123" in form["Body"]
        assert form["Body"].startswith("Your Kleroteria verification code")

    async def test_resent_wording(self):
        bodies = []

        def handler(request):
            bodies.append(dict(httpx.QueryParams(request.content.decode()))["Body"])
            return httpx.Response(201)

        await _sms_service(handler).send_verification_code(
            "+15550001", "ABC123", resent=True
        )

        assert bodies[0].startswith("Your new")

    async def test_rejected_request_returns_false(self):
        service = _sms_service(lambda request: httpx.Response(400, json={"code": 21211}))

        assert await service.send_verification_code("+15550001", "ABC123") is False

    async def test_transport_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        assert await _sms_service(handler).send_verification_code("+15550001", "ABC123") is False


class FakeEmail:
    is_configured = False

    def __init__(self, delivered=True):
        self.delivered = delivered
        self.calls = []

    def send_verification_code(self, to_email, code, **kwargs):
        self.calls.append((to_email, code, kwargs))
        return self.delivered


class FakeSms:
    is_configured = False

    def __init__(self, delivered=True):
        self.delivered = delivered
        self.calls = []

    async def send_verification_code(self, to_number, code, **kwargs):
        self.calls.append((to_number, code, kwargs))
        return self.delivered


class TestDispatcher:
    async def test_email_purpose_goes_to_email(self):
        email, sms = FakeEmail(), FakeSms()
        dispatcher = NotificationDispatcher(email, sms, ttl_minutes=15)

        await dispatcher.send(
            TokenPurpose.EMAIL, "ada@example.com", "ABC123", first_name="Ada"
        )

        assert email.calls == [
            (
                "ada@example.com",
                "ABC123",
                {"first_name": "Ada", "resent": False, "ttl_minutes": 15},
            )
        ]
        assert sms.calls == []

    async def test_phone_purpose_goes_to_sms(self):
        email, sms = FakeEmail(), FakeSms()
        dispatcher = NotificationDispatcher(email, sms)

        await dispatcher.send(TokenPurpose.PHONE, "+15550001", "ABC123", resent=True)

        assert sms.calls == [("+15550001", "ABC123", {"resent": True, "ttl_minutes": 10})]
        assert email.calls == []

    @pytest.mark.parametrize("purpose", [TokenPurpose.EMAIL, TokenPurpose.PHONE])
    async def test_failed_delivery_raises_send_error(self, purpose):
        dispatcher = NotificationDispatcher(FakeEmail(False), FakeSms(False))

        with pytest.raises(SendError) as excinfo:
            await dispatcher.send(purpose, "someone", "ABC123")
        assert excinfo.value.channel == purpose.value

    def test_build_dispatcher_from_settings(self, settings):
        dispatcher = build_dispatcher(settings)

        assert dispatcher.ttl_minutes == settings.verification_code_ttl_minutes
        assert dispatcher.email.from_name == settings.email_from_name
