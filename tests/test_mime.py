import base64

from mailbridge.mime import (
    decode_base64url,
    encode_base64url,
    extract_gmail_payload,
    extract_message,
    get_header,
    html_to_preview,
    make_snippet,
    parse_from_header,
    parse_raw_message,
    strip_angle_brackets,
)
from mailbridge.models import OutgoingAttachment
from mailbridge.providers.gmail import build_raw_email, build_raw_message


def _b64(text: str) -> str:
    return encode_base64url(text.encode("utf-8"))


def test_from_header_with_quoted_name():
    assert parse_from_header('"Alice Smith" <alice@example.com>') == ("Alice Smith", "alice@example.com")


def test_from_header_with_unquoted_name():
    assert parse_from_header("Bob <bob@example.com>") == ("Bob", "bob@example.com")


def test_from_header_bare_address():
    assert parse_from_header("carol@example.com") == ("", "carol@example.com")


def test_from_header_with_quotes_inside_the_name():
    assert parse_from_header('John "JJ" Doe <jj@example.com>') == ('John "JJ" Doe', "jj@example.com")


def test_from_header_unparseable_falls_back_to_whole_header():
    assert parse_from_header("weird <<header") == ("", "weird <<header")


def test_header_lookup_is_case_insensitive():
    headers = [{"name": "subject", "value": "Hi"}, {"name": "FROM", "value": "a@b.c"}]
    assert get_header(headers, "Subject") == "Hi"
    assert get_header(headers, "From") == "a@b.c"
    assert get_header(headers, "Cc") == ""


def test_strip_angle_brackets():
    assert strip_angle_brackets("<img1@x>") == "img1@x"
    assert strip_angle_brackets("img1@x") == "img1@x"
    assert strip_angle_brackets("") is None
    assert strip_angle_brackets("<>") is None


def test_base64url_round_trip_without_padding():
    data = bytes(range(256)) * 3 + b"\xfb\xff"
    encoded = encode_base64url(data)
    assert "+" not in encoded
    assert "/" not in encoded
    assert not encoded.endswith("=")
    assert decode_base64url(encoded) == data


def test_nested_gmail_payload():
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": _b64("plain body")}},
                    {
                        "mimeType": "multipart/related",
                        "parts": [
                            {"mimeType": "text/html", "body": {"data": _b64("<p>html body</p>")}},
                            {
                                "mimeType": "image/png",
                                "filename": "logo.png",
                                "headers": [{"name": "Content-Id", "value": "<logo@x>"}],
                                "body": {"attachmentId": "att-1", "size": 42},
                            },
                        ],
                    },
                ],
            },
            {
                "mimeType": "application/pdf",
                "filename": "report.pdf",
                "body": {"attachmentId": "att-2", "size": 1000},
            },
        ],
    }

    body = extract_gmail_payload(payload)

    assert body.text == "plain body"
    assert body.html == "<p>html body</p>"
    assert [a.attachment_id for a in body.attachments] == ["att-1", "att-2"]
    assert body.attachments[0].content_id == "logo@x"
    assert [a.attachment_id for a in body.inline_images] == ["att-1"]


def test_first_text_part_wins():
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [
            {"mimeType": "text/plain", "body": {"data": _b64("first")}},
            {"mimeType": "text/plain", "body": {"data": _b64("second")}},
        ],
    }
    assert extract_gmail_payload(payload).text == "first"


def test_single_part_payload():
    payload = {"mimeType": "text/html", "body": {"data": _b64("<b>only</b>")}}
    body = extract_gmail_payload(payload)
    assert body.html == "<b>only</b>"
    assert body.text == ""


def test_extract_raw_message_with_inline_image():
    image = base64.b64encode(b"\x89PNG fake").decode("ascii")
    source = (
        "From: a@example.com\r\n"
        "Subject: Pic\r\n"
        'Content-Type: multipart/related; boundary="b1"\r\n'
        "\r\n"
        "--b1\r\n"
        'Content-Type: multipart/alternative; boundary="b2"\r\n'
        "\r\n"
        "--b2\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        "\r\n"
        "see picture\r\n"
        "--b2\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        "\r\n"
        '<img src="cid:pic1">\r\n'
        "--b2--\r\n"
        "--b1\r\n"
        "Content-Type: image/png\r\n"
        "Content-ID: <pic1>\r\n"
        "Content-Transfer-Encoding: base64\r\n"
        "Content-Disposition: inline\r\n"
        "\r\n"
        f"{image}\r\n"
        "--b1--\r\n"
    ).encode("utf-8")

    body = extract_message(parse_raw_message(source))

    assert body.text.strip() == "see picture"
    assert 'cid:pic1' in body.html
    assert len(body.inline_images) == 1
    assert body.inline_images[0].content_id == "pic1"
    assert body.inline_images[0].data == b"\x89PNG fake"


def test_text_attachment_is_not_a_body():
    source = (
        'Content-Type: multipart/mixed; boundary="b"\r\n'
        "\r\n"
        "--b\r\n"
        "Content-Type: text/plain\r\n"
        "\r\n"
        "real body\r\n"
        "--b\r\n"
        "Content-Type: text/plain\r\n"
        'Content-Disposition: attachment; filename="notes.txt"\r\n'
        "\r\n"
        "attached notes\r\n"
        "--b--\r\n"
    ).encode("utf-8")

    body = extract_message(parse_raw_message(source))

    assert body.text.strip() == "real body"
    assert [a.filename for a in body.attachments] == ["notes.txt"]
    assert body.inline_images == []


def test_snippets():
    assert make_snippet("a\n\n  b\tc") == "a b c"
    assert len(make_snippet("x" * 500)) == 200
    assert html_to_preview("<style>p{}</style><p>Hello <b>world</b></p>") == "Hello world"


def test_build_raw_email_is_base64url():
    raw = build_raw_email(
        from_address="Me <me@gmail.com>",
        to="you@example.com",
        subject="Hi?>>",
        body="<p>été ~~~???</p>",
        in_reply_to="<orig@x>",
        references="<orig@x>",
    )
    assert "+" not in raw
    assert "/" not in raw
    assert not raw.endswith("=")

    decoded = decode_base64url(raw).decode("utf-8")
    assert "\r\nIn-Reply-To: <orig@x>\r\n" in decoded
    assert 'Content-Type: text/html; charset="UTF-8"' in decoded
    assert decoded.endswith("<p>été ~~~???</p>")


def test_build_raw_message_with_attachment_is_multipart():
    message = build_raw_message(
        from_address="me@gmail.com",
        to="you@example.com",
        subject="Report",
        body="<p>see attached</p>",
        attachments=[OutgoingAttachment("report.txt", "text/plain", b"numbers")],
        boundary="BOUNDARY",
    )

    msg = parse_raw_message(message.encode("utf-8"))
    assert msg.get_content_type() == "multipart/mixed"
    parts = msg.get_payload()
    assert parts[0].get_content_type() == "text/html"
    assert parts[1].get_filename() == "report.txt"
    assert parts[1].get_payload(decode=True) == b"numbers"
