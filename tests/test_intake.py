import asyncio
import json

import pytest
from pydantic import ValidationError as SchemaError

from errors import ConflictError, UpstreamError, ValidationError
from intake import (
    ContactFlow,
    IntakeFlow,
    derive_name_from_email,
    email_preferences,
    generate_ticket_id,
    generate_welcome_code,
    handle_contact,
    handle_newsletter,
    parse_body,
    parse_form,
    request_metadata,
    to_base36,
)
from schemas import ContactForm, NewsletterForm, sanitize_text


def _contact(**overrides):
    data = {
        "name": "Anna Schmidt",
        "email": "anna@example.com",
        "subject": "styling",
        "message": "Ich hätte gern eine Beratung.",
    }
    data.update(overrides)
    return data


def _details(form, data):
    with pytest.raises(ValidationError) as info:
        parse_form(form, data)
    assert isinstance(info.value.__cause__, SchemaError)
    return info.value.details


def test_validate_collects_every_violation() -> None:
    assert _details(ContactForm, {"name": "A", "email": "nope", "subject": "spam", "message": "kurz"}) == [
        "Name ist erforderlich (mindestens 2 Zeichen)",
        "Gültige E-Mail-Adresse ist erforderlich",
        "Nachricht ist erforderlich (mindestens 10 Zeichen)",
        "Ungültiger Betreff",
    ]


def test_validate_missing_fields() -> None:
    errors = _details(ContactForm, {})
    assert "Betreff ist erforderlich" in errors
    assert len(errors) == 4


@pytest.mark.parametrize("length, accepted", [(9, False), (10, True)])
def test_contact_message_length_boundary(length, accepted) -> None:
    data = _contact(message="x" * length)
    if accepted:
        assert parse_form(ContactForm, data).message == "x" * length
    else:
        assert _details(ContactForm, data) == ["Nachricht ist erforderlich (mindestens 10 Zeichen)"]


def test_length_is_checked_after_trimming() -> None:
    assert _details(ContactForm, _contact(name="  A  ")) == ["Name ist erforderlich (mindestens 2 Zeichen)"]


def test_non_string_values_are_rejected() -> None:
    assert _details(ContactForm, _contact(name=42)) == ["Name ist erforderlich (mindestens 2 Zeichen)"]


def test_newsletter_name_is_optional_but_checked_when_present() -> None:
    assert parse_form(NewsletterForm, {"email": "a@b.de"}).name is None
    assert parse_form(NewsletterForm, {"email": "a@b.de", "name": "   "}).name is None
    assert _details(NewsletterForm, {"email": "a@b.de", "name": "J"}) == [
        "Name muss mindestens 2 Zeichen lang sein"
    ]


def test_sanitize_escapes_and_caps() -> None:
    assert sanitize_text(" <b>\"Hi\" & 'you'</b> ") == "&lt;b&gt;&quot;Hi&quot; &amp; &#x27;you&#x27;&lt;/b&gt;"
    form = parse_form(ContactForm, _contact(message="m" * 1500, name="n" * 300))
    assert len(form.message) == 1000
    assert len(form.name) == 100
    assert form.email == "anna@example.com"


def test_contact_fields_are_escaped() -> None:
    form = parse_form(ContactForm, _contact(name="<Anna>"))
    assert form.name == "&lt;Anna&gt;"


def test_newsletter_email_is_normalized() -> None:
    form = parse_form(NewsletterForm, {"email": "  Anna.Schmidt@Example.COM "})
    assert form.email == "anna.schmidt@example.com"
    assert form.source is None


def test_intake_flow_requires_flow_steps() -> None:
    with pytest.raises(TypeError):
        IntakeFlow(None, None)
    assert ContactFlow.form is ContactForm


def test_parse_body_rejects_malformed_input() -> None:
    for body in (b"", b"{not json", b"[1, 2]"):
        with pytest.raises(ValidationError):
            parse_body(body)
    assert parse_body(b'{"a": 1}') == {"a": 1}


def test_to_base36() -> None:
    assert to_base36(0) == "0"
    assert to_base36(35) == "z"
    assert to_base36(36) == "10"


def test_ticket_ids_are_distinct_and_formatted() -> None:
    ids = [generate_ticket_id("DFP") for _ in range(100)]
    assert len(set(ids)) == len(ids)
    prefix, stamp, suffix = ids[0].split("-")
    assert prefix == "DFP"
    assert stamp.isupper() or stamp.isdigit()
    assert len(suffix) == 5
    assert ids[0] == ids[0].upper()


def test_welcome_code_format() -> None:
    code = generate_welcome_code("WELCOME", 15)
    assert code.startswith("WELCOME15-")
    assert code == code.upper()


@pytest.mark.parametrize(
    "email, expected",
    [
        ("anna.maria_schmidt@example.com", "Anna Maria Schmidt"),
        ("lisa-92@example.com", "Lisa"),
        ("1234@example.com", "Liebe Kundin"),
    ],
)
def test_derive_name_from_email(email, expected) -> None:
    assert derive_name_from_email(email) == expected


def test_email_preferences_by_tier_and_history() -> None:
    base = email_preferences("Neu", 0).to_payload()
    assert "vipOffers" not in base and "loyaltyRewards" not in base
    assert base["welcomeSeries"] is True

    vip = email_preferences("VIP", 6).to_payload()
    assert vip["vipOffers"] and vip["earlyAccess"] and vip["loyaltyRewards"]

    gold = email_preferences("Gold", 5).to_payload()
    assert gold["earlyAccess"] and "loyaltyRewards" not in gold


def test_request_metadata_defaults_to_unknown() -> None:
    assert request_metadata({}) == {
        "ip_address": "unknown",
        "user_agent": "unknown",
        "language": "unknown",
        "referrer": "direct",
    }
    meta = request_metadata({"Client-IP": "10.0.0.1", "User-Agent": "pytest"})
    assert meta["ip_address"] == "10.0.0.1"
    assert meta["user_agent"] == "pytest"


def test_contact_flow_forwards_enriched_payload(fake, http_client, settings) -> None:
    fake.customers.append(
        {"id": "rec1", "fields": {"email": "anna@example.com", "customer_tier": "Gold"}}
    )
    body = json.dumps(_contact(message="<script>alert('x')</script> bitte melden"))

    result = asyncio.run(handle_contact(body, {"x-forwarded-for": "1.2.3.4"}, http_client, settings))

    assert result.body["success"] is True
    assert result.body["ticketId"].startswith("DFP-")
    [payload] = fake.webhook_payloads("/contact-form")
    assert payload["ticketId"] == result.body["ticketId"]
    assert payload["subjectDisplay"] == "Styling-Beratung"
    assert payload["ipAddress"] == "1.2.3.4"
    assert payload["language"] == "unknown"
    assert payload["isExistingCustomer"] is True
    assert payload["customerTier"] == "Gold"
    assert "<script>" not in payload["message"]


def test_contact_flow_tolerates_customer_store_outage(fake, http_client, settings) -> None:
    fake.airtable_status = 503
    result = asyncio.run(handle_contact(json.dumps(_contact()), {}, http_client, settings))
    [payload] = fake.webhook_payloads("/contact-form")
    assert result.body["success"] is True
    assert payload["isExistingCustomer"] is False


def test_contact_flow_surfaces_webhook_failure(fake, http_client, settings) -> None:
    fake.webhook_status["contact-form"] = 502
    with pytest.raises(UpstreamError):
        asyncio.run(handle_contact(json.dumps(_contact()), {}, http_client, settings))


def test_newsletter_invalid_email_makes_no_external_calls(fake, http_client, settings) -> None:
    with pytest.raises(ValidationError) as info:
        asyncio.run(handle_newsletter(json.dumps({"email": "not-an-email"}), {}, http_client, settings))
    assert info.value.details == ["Gültige E-Mail-Adresse ist erforderlich"]
    assert fake.requests == []


def test_newsletter_conflict_for_subscribed_customer(fake, http_client, settings) -> None:
    fake.customers.append({"id": "rec9", "fields": {"email": "eva@example.com", "newsletter_subscribed": True}})
    with pytest.raises(ConflictError):
        asyncio.run(handle_newsletter(json.dumps({"email": "Eva@Example.com"}), {}, http_client, settings))
    assert fake.calls_to("n8n.test") == []


def test_newsletter_enriches_existing_customer(fake, http_client, settings) -> None:
    fake.customers.append(
        {
            "id": "rec2",
            "fields": {
                "email": "vip@example.com",
                "newsletter_subscribed": False,
                "customer_tier": "VIP",
                "total_spent": 1250.5,
                "total_orders": 8,
            },
        }
    )
    result = asyncio.run(handle_newsletter(json.dumps({"email": "vip@example.com"}), {}, http_client, settings))

    [payload] = fake.webhook_payloads("/newsletter-signup")
    assert payload["existingCustomer"] is True
    assert payload["customerId"] == "rec2"
    assert payload["totalOrders"] == 8
    assert payload["emailPreferences"]["loyaltyRewards"] is True
    assert payload["name"] == "Vip"
    assert payload["welcomeCode"] == result.body["welcomeCode"]

    [welcome] = fake.webhook_payloads("/email-automation")
    assert welcome["trigger"] == "welcome_series"
    assert welcome["discount_amount"] == 15
    assert result.side_effects[0].ok is True


def test_welcome_email_failure_does_not_fail_signup(fake, http_client, settings) -> None:
    fake.webhook_status["email-automation"] = 500
    result = asyncio.run(handle_newsletter(json.dumps({"email": "neu@example.com"}), {}, http_client, settings))
    assert result.body["success"] is True
    [effect] = result.side_effects
    assert effect.ok is False
    assert "500" in effect.error


def test_double_opt_in_skips_welcome_email(fake, http_client, settings) -> None:
    settings.DOUBLE_OPT_IN = True
    result = asyncio.run(handle_newsletter(json.dumps({"email": "neu@example.com"}), {}, http_client, settings))
    assert result.body["doubleOptIn"] is True
    assert "Bestätigungs-E-Mail" in result.body["message"]
    assert fake.calls_to("n8n.test", "/email-automation") == []
    assert result.side_effects == []


def test_newsletter_lookup_failure_is_upstream_error(fake, http_client, settings) -> None:
    fake.airtable_status = 500
    with pytest.raises(UpstreamError):
        asyncio.run(handle_newsletter(json.dumps({"email": "neu@example.com"}), {}, http_client, settings))
    assert fake.calls_to("n8n.test") == []
