import base64
import smtplib

import pytest

from mailbridge.errors import AuthError
from mailbridge.models import OutgoingAttachment, SendParams
from mailbridge.providers.smtp import SmtpSender, build_mime_message, recipients_of


class FakeSmtp:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []
        self.auth_code = 235
        self.login_error = None
        FakeSmtp.instances.append(self)

    def starttls(self):
        self.calls.append(("starttls",))

    def ehlo(self):
        self.calls.append(("ehlo",))

    def docmd(self, command, argument):
        self.calls.append(("docmd", command, argument))
        return self.auth_code, b"2.7.0 Accepted" if self.auth_code == 235 else b"5.7.8 Invalid credentials"

    def login(self, user, password):
        self.calls.append(("login", user, password))
        if self.login_error:
            raise self.login_error

    def send_message(self, message, to_addrs=None):
        self.calls.append(("send_message", message["Subject"], to_addrs))

    def quit(self):
        self.calls.append(("quit",))


class FakeSmtpSsl(FakeSmtp):
    pass


@pytest.fixture(autouse=True)
def reset_instances():
    FakeSmtp.instances = []


def sender(port):
    return SmtpSender("smtp.example.com", port, True, smtp_factory=FakeSmtp, smtp_ssl_factory=FakeSmtpSsl)


def params(**kwargs):
    values = dict(from_address="me@example.com", to="a@x.com, b@x.com", subject="Hi", body="<p>hello</p>")
    values.update(kwargs)
    return SendParams(**values)


def test_port_465_uses_implicit_tls():
    sender(465).send(build_mime_message(params(), "me@example.com"), ["a@x.com"], "me", password="pw")

    connection = FakeSmtp.instances[0]
    assert isinstance(connection, FakeSmtpSsl)
    assert ("starttls",) not in connection.calls


def test_other_ports_upgrade_with_starttls():
    sender(587).send(build_mime_message(params(), "me@example.com"), ["a@x.com"], "me", password="pw")

    connection = FakeSmtp.instances[0]
    assert not isinstance(connection, FakeSmtpSsl)
    assert connection.calls[0] == ("starttls",)
    assert ("login", "me", "pw") in connection.calls
    assert connection.calls[-1] == ("quit",)


def test_xoauth2_authentication():
    sender(465).send(build_mime_message(params(), "me@yahoo.com"), ["a@x.com"], "me@yahoo.com", access_token="tok")

    connection = FakeSmtp.instances[0]
    docmd = [call for call in connection.calls if call[0] == "docmd"][0]
    assert docmd[1] == "AUTH"
    mechanism, encoded = docmd[2].split(" ")
    assert mechanism == "XOAUTH2"
    assert base64.b64decode(encoded) == b"user=me@yahoo.com\x01auth=Bearer tok\x01\x01"
    assert ("send_message", "Hi", ["a@x.com"]) in connection.calls


def test_xoauth2_rejection_raises_auth_error():
    class Rejecting(FakeSmtpSsl):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.auth_code = 535

    smtp = SmtpSender("smtp.mail.yahoo.com", 465, smtp_ssl_factory=Rejecting)

    with pytest.raises(AuthError) as excinfo:
        smtp.send(build_mime_message(params(), "me@yahoo.com"), ["a@x.com"], "me", access_token="tok")

    assert excinfo.value.needs_reauth is True
    assert "Invalid credentials" in str(excinfo.value)
    assert FakeSmtp.instances[0].calls[-1] == ("quit",)


def test_password_rejection_does_not_require_reauth():
    class Rejecting(FakeSmtp):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.login_error = smtplib.SMTPAuthenticationError(535, b"bad password")

    smtp = SmtpSender("smtp.example.com", 587, smtp_factory=Rejecting)

    with pytest.raises(AuthError) as excinfo:
        smtp.send(build_mime_message(params(), "me@example.com"), ["a@x.com"], "me", password="wrong")

    assert excinfo.value.needs_reauth is False


def test_mime_message_headers_and_attachments():
    message = build_mime_message(
        params(
            cc="c@x.com",
            bcc="secret@x.com",
            in_reply_to="<root@x>",
            references="<root@x>",
            attachments=[OutgoingAttachment("data.csv", "text/csv", b"a,b\n1,2\n")],
        ),
        "Me <me@example.com>",
    )

    assert message["To"] == "a@x.com, b@x.com"
    assert message["Cc"] == "c@x.com"
    assert message["Bcc"] is None
    assert message["In-Reply-To"] == "<root@x>"
    assert message["Message-ID"].endswith("@example.com>")
    assert message.get_content_type() == "multipart/mixed"
    attachments = list(message.iter_attachments())
    assert [a.get_filename() for a in attachments] == ["data.csv"]
    assert message.get_body(("html",)).get_content().strip() == "<p>hello</p>"


def test_recipients_include_bcc():
    assert recipients_of(params(cc="c@x.com", bcc="d@x.com")) == ["a@x.com", "b@x.com", "c@x.com", "d@x.com"]


def test_display_names_with_commas_stay_one_recipient():
    message_params = params(to='"Smith, John" <j@x.com>, b@x.com')

    assert recipients_of(message_params) == ["j@x.com", "b@x.com"]
    assert build_mime_message(message_params, "me@example.com")["To"] == '"Smith, John" <j@x.com>, b@x.com'
