"""Tests for tool-result validation and the fallback parsers."""
import pytest

from setting_forge.errors import ToolResultParseError
from setting_forge.models import CandidateNode, CompletionSignal, parse_tool_call
from setting_forge.models.tool_results import MARK_GENERATION_COMPLETE, TEXT_TO_SETTINGS, split_directives
from setting_forge.services.fallback_parser import extract_json, parse_json_settings, parse_text_settings


class TestToolResults:
    """Boundary validation of extraction payloads."""

    def test_nodes_payload_with_complete_flag(self):
        directives = parse_tool_call(TEXT_TO_SETTINGS, {
            "nodes": [{"name": "Elena", "type": "CHARACTER", "description": "Cartographer",
                       "tempId": "R1-1", "parentId": "R1"}],
            "complete": True,
        })
        candidates, complete = split_directives(directives)
        assert complete
        assert candidates[0].temp_id == "R1-1"
        assert candidates[0].parent_id == "R1"

    def test_settings_alias(self):
        directives = parse_tool_call(TEXT_TO_SETTINGS, {"settings": [{"name": "A", "type": "LORE",
                                                                      "description": "Old songs"}]})
        assert isinstance(directives[0], CandidateNode)

    @pytest.mark.parametrize("token", ["null", "None", "", "root", "-"])
    def test_null_parent_tokens(self, token):
        node = CandidateNode(name="A", type="LORE", description="x", parent_id=token)
        assert node.parent_id is None

    def test_completion_tool(self):
        directives = parse_tool_call(MARK_GENERATION_COMPLETE, {"message": "done"})
        assert isinstance(directives[0], CompletionSignal)

    def test_malformed_nodes(self):
        with pytest.raises(ToolResultParseError):
            parse_tool_call(TEXT_TO_SETTINGS, {"nodes": "not a list"})
        with pytest.raises(ToolResultParseError):
            parse_tool_call(TEXT_TO_SETTINGS, {"nodes": ["just text"]})

    def test_unknown_tool(self):
        with pytest.raises(ToolResultParseError):
            parse_tool_call("delete_everything", {})


class TestJsonFallback:
    """JSON recovered from prose answers."""

    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"nodes": [{"name": "A", "type": "LORE", "description": "d"}]}\n```'
        directives = parse_json_settings(text)
        assert [d.name for d in directives] == ["A"]

    def test_balanced_braces_with_strings(self):
        text = 'Sure {"nodes": [{"name": "A {b}", "type": "LORE", "description": "say \\"hi\\""}]} trailing'
        assert extract_json(text).endswith("]}")
        assert parse_json_settings(text)[0].name == "A {b}"

    def test_bare_list(self):
        directives = parse_json_settings('[{"name": "A", "type": "LORE", "description": "d"}]')
        assert len(directives) == 1

    def test_list_of_node_objects(self):
        text = '[{"nodes": [{"name": "A", "type": "LORE", "description": "d"}], "complete": true}]'
        candidates, complete = split_directives(parse_json_settings(text))
        assert len(candidates) == 1
        assert complete

    @pytest.mark.parametrize("text", [None, "", "no json here", "{broken", '{"nodes": 3}'])
    def test_nothing_usable(self, text):
        assert parse_json_settings(text) is None


class TestTextFallback:
    """The streaming plain-text node format."""

    TEXT = (
        "Node R1 Title: Characters [CHARACTER]\n"
        "Parent: null\n"
        "Content: People of the archipelago.\n"
        "\n"
        "Node R1-1 Title: Elena Vance [character]\n"
        "Parent: R1\n"
        "Content: A disgraced cartographer.\n"
        "She maps currents nobody else can see.\n"
        "\n"
        "Node R2 Title: Old Songs\n"
        "Parent: null\n"
        "Content: Ballads that double as sea charts.\n"
    )

    def test_parses_nodes(self):
        nodes = parse_text_settings(self.TEXT)
        assert [n.temp_id for n in nodes] == ["R1", "R1-1", "R2"]
        assert nodes[0].parent_id is None
        assert nodes[1].parent_id == "R1"
        assert nodes[1].type == "character"

    def test_multiline_content(self):
        elena = parse_text_settings(self.TEXT)[1]
        assert elena.description == "A disgraced cartographer.\nShe maps currents nobody else can see."

    def test_type_defaults_to_other(self):
        assert parse_text_settings(self.TEXT)[2].type == "OTHER"

    def test_type_line(self):
        nodes = parse_text_settings("Node R3 Title: Tides\nType: GEOGRAPHY\nParent: null\nContent: Twice daily.\n")
        assert nodes[0].type == "GEOGRAPHY"

    def test_drop_trailing_leaves_open_node(self):
        cut = self.TEXT[:self.TEXT.index("Ballads")] + "Ballads that"
        nodes = parse_text_settings(cut, drop_trailing=True)
        assert [n.temp_id for n in nodes] == ["R1", "R1-1"]

    def test_drop_trailing_keeps_node_closed_by_blank_line(self):
        nodes = parse_text_settings(self.TEXT + "\n", drop_trailing=True)
        assert [n.temp_id for n in nodes] == ["R1", "R1-1", "R2"]

    def test_incomplete_node_without_content_is_dropped(self):
        nodes = parse_text_settings(self.TEXT + "\nNode R3 Title: Cut off [LORE]\nParent: null\n")
        assert [n.temp_id for n in nodes] == ["R1", "R1-1", "R2"]
