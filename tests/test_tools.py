"""Tests for the tool catalog and argument validation."""

from magpie.tools import DIRECT_EFFECT_NOTE, TOOLS, TOOLS_BY_NAME, ToolEffect, validate_arguments


class TestCatalog:
    def test_scrapbook_read_tools_post_directly(self):
        direct = {tool.name for tool in TOOLS if tool.effect is ToolEffect.DIRECT}
        assert direct == {"get_scrapbook_memory", "search_scrapbook", "get_scrapbook_context"}

    def test_direct_note_in_schema(self):
        assert TOOLS_BY_NAME["search_scrapbook"].schema()["description"].startswith(DIRECT_EFFECT_NOTE)
        assert not TOOLS_BY_NAME["react"].schema()["description"].startswith(DIRECT_EFFECT_NOTE)

    def test_strict_schemas_require_every_property(self):
        for tool in TOOLS:
            params = tool.parameters
            assert set(params["required"]) == set(params["properties"]), tool.name
            assert params["additionalProperties"] is False


class TestValidation:
    def test_valid_image_call(self):
        args = {"prompt": "a goose", "aspectRatio": "16:9", "imageSize": None, "isGif": False}
        assert validate_arguments(TOOLS_BY_NAME["generate_image"], args) is None

    def test_missing_key(self):
        assert validate_arguments(TOOLS_BY_NAME["react"], {"emoji": "x"}) == "missing messageId"

    def test_unexpected_key(self):
        assert validate_arguments(TOOLS_BY_NAME["search_memory"], {"query": "x", "limit": 3}) == "unexpected limit"

    def test_enum(self):
        args = {"prompt": "a goose", "aspectRatio": "5:1", "imageSize": None, "isGif": False}
        assert "aspectRatio" in validate_arguments(TOOLS_BY_NAME["generate_image"], args)

    def test_wrong_type(self):
        args = {"prompt": "a goose", "aspectRatio": None, "imageSize": None, "isGif": "yes"}
        assert validate_arguments(TOOLS_BY_NAME["generate_image"], args) == "isGif has the wrong type"

    def test_not_an_object(self):
        assert validate_arguments(TOOLS_BY_NAME["react"], ["x"]) == "arguments must be an object"
