"""
Tests for review request message rendering
"""

from app.services.message_renderer import MessageRenderer, MessageTone, ToneKind, FRIENDLY, first_name_of

LINK = "https://g.page/r/corner-bakery/review"


class TestMessageTone:

    def test_known_tone(self):
        assert MessageTone.parse("Professional").kind is ToneKind.professional

    def test_unknown_tone_falls_back_to_friendly(self):
        assert MessageTone.parse("sarcastic") == FRIENDLY

    def test_custom_without_template_falls_back_to_friendly(self):
        assert MessageTone.parse("custom", "   ") == FRIENDLY

    def test_custom_keeps_template(self):
        tone = MessageTone.parse("custom", "Hey {{CustomerName}}")
        assert tone.kind is ToneKind.custom
        assert tone.template == "Hey {{CustomerName}}"


class TestMessageRenderer:

    def setup_method(self):
        self.renderer = MessageRenderer()

    def test_friendly(self):
        body = self.renderer.render(FRIENDLY, "Jane Doe", "Corner Bakery", LINK)

        assert body == (
            "Hi Jane! Thanks for shopping at Corner Bakery! "
            f"We'd love to hear about your experience: {LINK}"
        )

    def test_professional(self):
        body = self.renderer.render(MessageTone.parse("professional"), "Jane Doe", "Corner Bakery", LINK)

        assert body == f"Thank you for your purchase at Corner Bakery. We value your feedback: {LINK}"

    def test_grateful(self):
        body = self.renderer.render(MessageTone.parse("grateful"), None, "Corner Bakery", LINK)

        assert body.startswith("Thank you so much for supporting Corner Bakery!")
        assert body.endswith(LINK)

    def test_missing_name_uses_there(self):
        body = self.renderer.render(FRIENDLY, None, "Corner Bakery", LINK)

        assert body.startswith("Hi there!")

    def test_custom_placeholders_case_insensitive(self):
        tone = MessageTone.parse("custom", "{{customername}}, rate {{ BusinessName }}: {{REVIEWLINK}}")

        body = self.renderer.render(tone, "Jane Doe", "Corner Bakery", LINK)

        assert body == f"Jane, rate Corner Bakery: {LINK}"

    def test_custom_without_link_placeholder_appends_link(self):
        tone = MessageTone.parse("custom", "Thanks for visiting {{BusinessName}}!")

        body = self.renderer.render(tone, "Jane", "Corner Bakery", LINK)

        assert body == f"Thanks for visiting Corner Bakery! {LINK}"

    def test_custom_with_literal_link_not_duplicated(self):
        tone = MessageTone.parse("custom", f"Review us at {LINK}")

        body = self.renderer.render(tone, "Jane", "Corner Bakery", LINK)

        assert body.count(LINK) == 1

    def test_custom_template_not_evaluated_as_jinja(self):
        tone = MessageTone.parse("custom", "{{ 7 * 7 }} {{ReviewLink}}")

        body = self.renderer.render(tone, "Jane", "Corner Bakery", LINK)

        assert "49" not in body
        assert body.startswith("{{ 7 * 7 }}")


def test_first_name_of():
    assert first_name_of("  Jane   Doe ") == "Jane"
    assert first_name_of("") == "there"
