from coderelay.tools import ToolDefinition, dump_tools, tool_from_function


def get_menu_items(category: str, max_results: int = 10, search=None):
    """Get menu items by category or search query."""


class TestToolFromFunction:
    def test_schema_shape(self):
        definition = tool_from_function(get_menu_items)
        dumped = definition.model_dump()

        assert dumped["type"] == "function"
        assert dumped["function"]["name"] == "get_menu_items"
        assert dumped["function"]["description"] == "Get menu items by category or search query."
        assert dumped["function"]["parameters"]["type"] == "object"

    def test_python_types_map_to_json_types(self):
        def func(a: str, b: int, c: float, d: bool, e: list, f: dict):
            pass

        props = tool_from_function(func).function.parameters.properties
        assert props["a"]["type"] == "string"
        assert props["b"]["type"] == "number"
        assert props["c"]["type"] == "number"
        assert props["d"]["type"] == "boolean"
        assert props["e"]["type"] == "array"
        assert props["f"]["type"] == "object"

    def test_unannotated_param_defaults_to_string(self):
        props = tool_from_function(get_menu_items).function.parameters.properties
        assert props["search"]["type"] == "string"

    def test_only_params_without_default_required(self):
        params = tool_from_function(get_menu_items).function.parameters
        assert params.required == ["category"]

    def test_descriptions(self):
        definition = tool_from_function(
            get_menu_items, descriptions={"category": "Menu category"},
        )
        props = definition.function.parameters.properties
        assert props["category"]["description"] == "Menu category"
        assert props["search"]["description"] == ""


def test_dump_tools_accepts_dicts_and_models():
    raw = {"type": "function", "function": {"name": "raw", "parameters": {"type": "object"}}}
    dumped = dump_tools([tool_from_function(get_menu_items), raw])

    assert dumped[0]["function"]["name"] == "get_menu_items"
    assert dumped[1] == raw


def test_tool_definition_validates_wire_shape():
    definition = ToolDefinition.model_validate({
        "type": "function",
        "function": {
            "name": "check_allergens",
            "description": "Check allergen information",
            "parameters": {
                "type": "object",
                "properties": {"item_name": {"type": "string"}},
                "required": ["item_name"],
            },
        },
    })
    assert definition.function.parameters.required == ["item_name"]
