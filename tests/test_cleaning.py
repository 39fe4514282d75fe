from supportrag.services.cleaning import (
    clean_email_text,
    clean_structured_text,
    clean_ticket_text,
    normalize_whitespace,
    strip_html,
)


def test_normalize_whitespace():
    text = "a\r\nb\t c  d\n\n\n\ne  "
    assert normalize_whitespace(text) == "a\nb c d\n\ne"


def test_strip_html_keeps_line_structure():
    assert strip_html("<p>Hello&nbsp;there</p><br/>A &amp; B") == "\nHello there\n\nA & B"


def test_ticket_text_is_html_stripped_and_normalized():
    assert clean_ticket_text("<p>Hello&nbsp;there</p><br/>Line") == "Hello there\n\nLine"
    assert clean_ticket_text(None) == ""


def test_email_drops_quoted_reply():
    body = (
        "Hi team,\n"
        "Please ship it.\n"
        "\n"
        "On Mon, Jan 1, 2024 at 10:00 AM Bob <bob@example.com> wrote:\n"
        "> When will it ship?\n"
        "> Thanks"
    )
    assert clean_email_text(body) == "Hi team,\nPlease ship it."


def test_email_drops_forwarded_headers():
    body = "See below.\n\nFrom: someone@example.com\nSent: Monday\nSubject: old thread\nold body"
    assert clean_email_text(body) == "See below."


def test_email_truncates_signature():
    body = "Order arrived damaged.\n\nThanks,\nJane Doe\nAcme Corp"
    assert clean_email_text(body) == "Order arrived damaged."


def test_email_drops_auto_reply_banner():
    body = "Out of office until Monday.\nI will answer when I am back."
    assert clean_email_text(body) == "I will answer when I am back."


def test_email_empty():
    assert clean_email_text("") == ""
    assert clean_email_text("<br>") == ""


def test_structured_text_only_normalizes():
    assert clean_structured_text("  Order  A1001\n\n\n\ntotal ") == "Order A1001\n\ntotal"
