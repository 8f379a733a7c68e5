from execution_engine.services.personalization import personalization_fields, personalize


def test_tokens_are_case_insensitive_and_trimmed():
    recipient = {"first_name": "Ada", "company": "Analytical Engines"}

    assert personalize("Hi {{First_Name}} at {{ COMPANY }}", recipient) == "Hi Ada at Analytical Engines"


def test_missing_values_use_fallbacks():
    assert personalize("Hi {{first_name}} from {{company}}", {}) == "Hi there from your company"
    assert personalize("Dear {{full_name}}", {"email": "x@example.com"}) == "Dear there"


def test_unknown_tokens_are_removed():
    rendered = personalize("Hello {{first_name}}{{unsubscribe_link}}!", {"first_name": "Ada"})

    assert rendered == "Hello Ada!"
    assert "{{" not in rendered


def test_name_is_split_when_first_and_last_are_missing():
    fields = personalization_fields({"name": "Grace Brewster Hopper"})

    assert fields["first_name"] == "Grace"
    assert fields["last_name"] == "Brewster Hopper"
    assert fields["full_name"] == "Grace Brewster Hopper"


def test_custom_fields_fill_profile_tokens():
    recipient = {"custom_fields": {"industry": "Retail", "location": "Austin", "title": "CMO"}}

    assert personalize("{{title}} in {{industry}}, {{location}}", recipient) == "CMO in Retail, Austin"


def test_alternate_profile_columns_are_used_as_fallbacks():
    recipient = {"job_title": "Founder", "vertical": "SaaS", "city": "Denver", "address": "1 Main St"}

    assert personalize("{{title}} in {{industry}}, {{location}}", recipient) == "Founder in SaaS, Denver"
    assert personalize("{{location}}", {"address": "1 Main St"}) == "1 Main St"


def test_html_mode_escapes_recipient_values():
    recipient = {"first_name": "<script>alert(1)</script>"}

    rendered = personalize("<p>Hi {{first_name}}</p>", recipient, escape_html=True)

    assert "<script>" not in rendered
    assert rendered == "<p>Hi &lt;script&gt;alert(1)&lt;/script&gt;</p>"
