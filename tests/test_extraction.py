"""
Unit tests for SpecExtractor.
"""
import pytest

from extraction import SpecExtractor, extract_specification


class TestExtract:
    def test_single_fragment_scenario_populates_all_seven_fields(self, extractor, spec_text):
        spec = extractor.extract(spec_text)

        assert spec is not None
        assert set(spec.fields) == {
            "name", "description", "users", "goal", "features", "tech_stack", "ui_style",
        }
        assert spec["name"] == "A"
        assert spec["users"] == "[x]"
        assert spec["tech_stack"] == "frontend: y"
        assert spec["ui_style"] == "s"

    @pytest.mark.parametrize(
        "dropped",
        [
            ["name: A"],
            ["description: d"],
            ["users: [x]"],
            ["goal: [g]"],
            ["features: [f]"],
            ["tech_stack:", "  frontend: y"],
            ["ui_style: s"],
        ],
    )
    def test_missing_any_required_key_is_not_found(self, extractor, spec_body, dropped):
        lines = [line for line in spec_body.split("\n") if line not in dropped]
        text = "```yaml\n" + "\n".join(lines) + "\n```"

        assert extractor.extract(text) is None

    def test_long_key_spellings_are_accepted(self, extractor):
        text = (
            "```yaml\n"
            "project_name: Tide\n"
            "project_description: |\n"
            "  Tide tables for surfers\n"
            "users:\n  - surfers\n"
            "goals:\n  - know when to paddle out\n"
            "features:\n  - Dashboard\n"
            "tech_stack:\n  frontend: Next.js\n"
            "ui_style: ocean blues\n"
            "```"
        )
        spec = extractor.extract(text)

        assert spec is not None
        assert spec["name"] == "Tide"
        assert "surfers" in spec["description"]
        assert spec["goal"] == "- know when to paddle out"

    def test_first_matching_pattern_decides(self, extractor, spec_body):
        # The tagged fence is incomplete; a complete generic fence later on is not consulted.
        text = "```yaml\nname: A\n```\nand also\n```\n" + spec_body + "\n```"

        assert extractor.extract(text) is None

    def test_unclosed_yaml_tag_still_extracts(self, extractor, spec_body):
        spec = extractor.extract("yaml\n" + spec_body)

        assert spec is not None
        assert spec["features"] == "[f]"

    def test_plain_conversation_is_not_found(self, extractor):
        assert extractor.extract("What problem are you trying to solve?") is None


class TestFallbackScan:
    def test_unfenced_block_ends_at_blank_line(self, extractor):
        text = (
            "Here's the summary.\n"
            "project_name: A\n"
            "project_description: d\n"
            "users: x\n"
            "goal: g\n"
            "features: f\n"
            "tech_stack: next\n"
            "ui_style: clean\n"
            "\n"
            "How does that sound?"
        )
        spec = extractor.extract(text)

        assert spec is not None
        assert spec["ui_style"] == "clean"
        assert "How does that" not in spec.text

    def test_unfenced_block_stops_at_closing_phrase(self, extractor):
        text = (
            "project_name: A\n"
            "project_description: d\n"
            "users: x\n"
            "goal: g\n"
            "features: f\n"
            "ui_style: clean\n"
            "tech_stack: next\n"
            "how does that look to you?"
        )
        spec = extractor.extract(text)

        assert spec is not None
        assert spec["tech_stack"] == "next"

    def test_fallback_without_anchor_is_not_found(self, extractor):
        assert extractor.extract("project_name: A\nusers: x") is None


class TestLooksLikeSpecification:
    @pytest.mark.parametrize(
        "text",
        ["```yaml", "closing ```", "project_name: Tide", "ui_style: bold"],
    )
    def test_markers_and_keys_are_flagged(self, extractor, text):
        assert extractor.looks_like_specification(text) is True

    def test_plain_text_is_not_flagged(self, extractor):
        assert extractor.looks_like_specification("Sounds like a great idea!") is False


def test_scan_fields_first_occurrence_wins(extractor):
    fields = extractor.scan_fields("name: first\nname: second\nusers: x")

    assert fields["name"] == "first"
    assert fields["users"] == "x"


def test_module_shortcut_uses_default_tables(spec_text):
    spec = extract_specification(spec_text)

    assert spec is not None
    assert spec["description"] == "d"


def test_required_lists_canonical_names():
    assert SpecExtractor().required == [
        "name", "description", "users", "goal", "features", "tech_stack", "ui_style",
    ]
