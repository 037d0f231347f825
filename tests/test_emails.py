import emails


def capture(monkeypatch):
    sent = []
    monkeypatch.setattr(emails, "send_email", lambda to, subject, body: sent.append((to, subject, body)) or True)
    return sent


def test_notification_email_escapes_user_text(monkeypatch):
    sent = capture(monkeypatch)
    assert emails.send_notification_email(
        "student@medschool.org", "Ann <b>", 'Case "<script>x</script>" updated', "Check INR < 2 & > 3"
    )
    [(to, subject, body)] = sent
    assert to == "student@medschool.org"
    assert "<script>" not in body
    assert "&lt;script&gt;" in body
    assert "Check INR &lt; 2 &amp; &gt; 3" in body
    assert "Ann &lt;b&gt;" in body


def test_verification_email_links_token(monkeypatch):
    sent = capture(monkeypatch)
    emails.send_verification_email("new@medschool.org", "<i>New</i>", "abc123")
    [(_, subject, body)] = sent
    assert subject == "Verify your email address"
    assert "/verify-email/abc123" in body
    assert "<i>" not in body


def test_send_email_without_smtp_logs_and_succeeds(caplog):
    with caplog.at_level("INFO", logger="emails"):
        assert emails.send_email("a@medschool.org", "Hello", "<p>Hi</p>")
    assert "[DEV EMAIL]" in caplog.text
