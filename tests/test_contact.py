FORM = {
    "name": "  Mariam Ali ",
    "email": "Mariam@Example.com",
    "phone": "0300 1234567",
    "subject": "Custom bridal set",
    "message": "Do you take custom orders for bridal sets?",
    "marketingConsent": True,
}


async def test_contact_form_notifies_business_and_customer(api_client, mail, csrf_headers) -> None:
    headers = await csrf_headers()
    resp = await api_client.post("/api/contact", json=FORM, headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "message": "Thank you for your message! We'll get back to you within 24 hours.",
    }

    business, customer = mail.sent
    assert business["to"] == "owner@miorah.test"
    assert business["subject"] == "New Contact Form: Custom bridal set - From Mariam Ali"
    assert "Email: mariam@example.com" in business["text"]
    assert "Marketing Consent: Yes" in business["text"]
    assert customer["to"] == "mariam@example.com"
    assert customer["subject"] == "Thank You for Contacting Miorah Collections"


async def test_contact_form_requires_csrf_token(api_client, mail) -> None:
    resp = await api_client.post("/api/contact", json=FORM)
    assert resp.status_code == 403
    assert mail.sent == []


async def test_contact_form_reports_field_errors(api_client, mail, csrf_headers) -> None:
    headers = await csrf_headers()
    bad = {**FORM, "email": "not-an-email", "message": "short", "marketingConsent": "yes"}
    resp = await api_client.post("/api/contact", json=bad, headers=headers)
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["message"] == "Please check your input and try again."
    assert {error["field"] for error in body["errors"]} == {"email", "message", "marketingConsent"}
    assert mail.sent == []

    empty = await api_client.post("/api/contact", content=b"", headers=headers)
    assert empty.status_code == 400
    assert empty.json()["success"] is False


async def test_contact_form_mail_failure(api_client, mail, csrf_headers) -> None:
    mail.fail = True
    headers = await csrf_headers()
    resp = await api_client.post("/api/contact", json=FORM, headers=headers)
    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert "+92 344 8066483" in resp.json()["message"]


async def test_mail_connection_check_is_admin_only(api_client, mail, make_user) -> None:
    shopper = make_user()
    denied = await api_client.get("/api/contact/test", headers={"x-auth-token": shopper["token"]})
    assert denied.status_code == 403

    auth = {"x-auth-token": make_user(admin=True)["token"]}
    ok = await api_client.get("/api/contact/test", headers=auth)
    assert ok.json() == {"success": True, "message": "Email configuration is working!"}

    mail.fail = True
    broken = await api_client.get("/api/contact/test", headers=auth)
    assert broken.status_code == 500
    assert broken.json()["message"] == "Email configuration error"
