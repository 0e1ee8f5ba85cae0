import ast
import itertools

import pytest

from pyrunner.data.schemas import InputFileDescriptor, InputItem, ScriptGenerationConfig
from pyrunner.engine.composer import (
    USER_CODE_MARKER,
    compose_export_script,
    compose_script,
    extract_future_imports,
)
from pyrunner.errors import ScriptGenerationError


def _assignments(script: str) -> dict:
    """Evaluates the top-level literal assignments of a generated script."""
    values = {}
    for node in ast.parse(script).body:
        if isinstance(node, ast.Assign) and isinstance(node.targets[0], ast.Name):
            try:
                values[node.targets[0].id] = ast.literal_eval(node.value)
            except ValueError:
                continue
    return values


def test_env_vars_are_injected_as_assignments():
    script = compose_script("print(API_KEY)", env_vars={"API_KEY": "secret123"})

    assert 'API_KEY = "secret123"' in script.splitlines()


def test_hidden_values_never_leak():
    config = ScriptGenerationConfig(hide_variable_values=True, include_env_vars_dict=True)
    script = compose_script(
        "print(API_KEY)",
        items=[{"token": "item-secret"}],
        env_vars={"API_KEY": "secret123"},
        config=config,
    )

    assert 'API_KEY = "***hidden***"' in script.splitlines()
    assert "secret123" not in script
    assert "item-secret" not in script
    assert 'env_vars = "***hidden***"' in script


def test_first_item_fields_and_legacy_items():
    items = [{"id": 1, "name": "Test"}, {"id": 2, "name": "Other"}]

    script = compose_script("print(id, name)", items=items)

    lines = script.splitlines()
    assert "id = 1" in lines
    assert 'name = "Test"' in lines
    assert _assignments(script)["input_items"] == items


def test_items_accept_models_and_bare_mappings_alike():
    from_models = compose_script("pass", items=[InputItem(json={"a": 1})])
    from_mappings = compose_script("pass", items=[{"a": 1}])
    from_wrapped = compose_script("pass", items=[{"json": {"a": 1}, "binary": {}}])

    assert from_models == from_mappings == from_wrapped


def test_item_fields_win_name_collisions_with_env_vars():
    script = compose_script(
        "print(TOKEN)", items=[{"TOKEN": "from-item"}], env_vars={"TOKEN": "from-env"}
    )

    assert _assignments(script)["TOKEN"] == "from-item"


def test_unusable_keys_are_skipped_and_others_sanitized():
    script = compose_script("pass", items=[{"  ": 1, "first name": "Ada", "2nd": 2}])

    values = _assignments(script)
    assert values["first_name"] == "Ada"
    assert values["var_2nd"] == 2
    compile(script, "<test>", "exec")


def test_future_imports_are_hoisted_above_everything():
    user_code = "import os\nfrom __future__ import annotations\n\nx: int = 1\nprint(x)"

    script = compose_script(user_code, items=[{"a": 1}])

    statements = ast.parse(script).body
    assert isinstance(statements[0], ast.ImportFrom)
    assert statements[0].module == "__future__"
    body = script.split(USER_CODE_MARKER, 1)[1]
    assert "__future__" not in body
    compile(script, "<test>", "exec")


def test_extract_future_imports_keeps_other_lines_verbatim():
    code = "from __future__ import annotations\n\n\ndef f():\n    return 1\n"

    directives, remaining = extract_future_imports(code)

    assert directives == ["from __future__ import annotations"]
    assert remaining == "def f():\n    return 1"


def test_unknown_future_feature_raises_generation_error():
    with pytest.raises(ScriptGenerationError):
        compose_script("from __future__ import not_a_real_feature\nprint(1)")


@pytest.mark.parametrize(
    "include_input_items, include_env_vars_dict, hide, output_dir",
    list(itertools.product([True, False], [True, False], [True, False], [None, "/tmp/out"])),
)
def test_every_toggle_combination_compiles(
    include_input_items, include_env_vars_dict, hide, output_dir
):
    """
    Unit Test: Every configuration composes into a syntactically valid script.
    """
    config = ScriptGenerationConfig(
        include_input_items=include_input_items,
        include_env_vars_dict=include_env_vars_dict,
        hide_variable_values=hide,
    )
    files = [
        InputFileDescriptor(
            filename="a.csv",
            mimetype="text/csv",
            size=3,
            extension="csv",
            binary_key="data",
            item_index=0,
            base64_data="YSxi",
        )
    ]

    script = compose_script(
        "from __future__ import annotations\nprint('ok')",
        items=[{"id": 1, "tags": ["x"], "meta": None}],
        env_vars={"API_KEY": "k", "1BAD": "v"},
        input_files=files,
        output_dir=output_dir,
        config=config,
    )

    compile(script, "<test>", "exec")
    assert ("input_items = " in script) is include_input_items
    assert ("env_vars = " in script) is include_env_vars_dict
    assert ("output_dir = " in script) is (output_dir is not None)


def test_compose_script_is_deterministic():
    kwargs = dict(
        user_code="print(a)",
        items=[{"a": 1, "b": [1, 2]}],
        env_vars={"K": "v"},
        output_dir="/tmp/x",
    )

    assert compose_script(**kwargs) == compose_script(**kwargs)


def test_input_files_are_exposed_and_base64_redacted_when_hidden():
    files = [
        InputFileDescriptor(
            filename="photo.png",
            mimetype="image/png",
            size=4,
            extension="png",
            binary_key="image",
            item_index=0,
            base64_data="AAECAw==",
        )
    ]

    visible = _assignments(compose_script("pass", input_files=files))
    hidden = compose_script(
        "pass", input_files=files, config=ScriptGenerationConfig(hide_variable_values=True)
    )

    assert visible["input_files"][0]["filename"] == "photo.png"
    assert visible["input_files"][0]["base64_data"] == "AAECAw=="
    assert "temp_path" not in visible["input_files"][0]
    assert "AAECAw==" not in hidden


def test_script_layout():
    script = compose_script("print('hi')", env_vars={"A": "1"})

    lines = script.splitlines()
    assert lines[0] == "#!/usr/bin/env python3"
    assert "import json" in lines
    assert "import sys" in lines
    assert lines.index("import json") < lines.index('A = "1"')
    assert script.endswith("print('hi')\n")


def test_export_script_omits_environment_variables():
    script = compose_export_script(
        "print(1)",
        items=[{"id": 7}],
        config=ScriptGenerationConfig(include_env_vars_dict=True),
    )

    assert "env_vars" not in script
    assert "id = 7" in script.splitlines()


@pytest.mark.parametrize("separator", ["\u2028", "\u2029", "\x0c", "\x85", "\x1e"])
def test_non_newline_line_separators_in_strings_survive(separator):
    """
    Unit Test: Characters that str.splitlines() treats as breaks but Python
    source does not are kept inside their string literal.
    """
    user_code = f's = "a{separator}b"\nprint(len(s))'

    script = compose_script(user_code)

    compile(script, "<test>", "exec")
    assert script.endswith(user_code + "\n")


def test_windows_line_endings_are_kept():
    user_code = "from __future__ import annotations\r\nx = 1\r\nprint(x)\r\n"

    directives, remaining = extract_future_imports(user_code)

    assert directives == ["from __future__ import annotations"]
    assert remaining == "x = 1\r\nprint(x)\r"
    compile(compose_script(user_code), "<test>", "exec")


def test_parenthesized_future_import_spanning_lines():
    user_code = "from __future__ import (\n    annotations,\n)\nx: int = 1\n"

    directives, remaining = extract_future_imports(user_code)
    script = compose_script(user_code)

    assert directives == ["from __future__ import (\n    annotations,\n)"]
    assert remaining == "x: int = 1"
    statements = ast.parse(script).body
    assert isinstance(statements[0], ast.ImportFrom)
    assert statements[0].module == "__future__"
    assert [alias.name for alias in statements[0].names] == ["annotations"]


@pytest.mark.parametrize(
    "item, expected",
    [
        ({"fields": "a,b", "id": 1}, {"fields": "a,b", "id": 1}),
        ({"json": 5, "id": 1}, {"json": 5, "id": 1}),
        ({"json": "raw text"}, {"json": "raw text"}),
    ],
)
def test_columns_named_like_the_item_wrapper_are_fields(item, expected):
    script = compose_script("pass", items=[item])

    values = _assignments(script)
    assert values["input_items"] == [expected]
    for key, value in expected.items():
        assert values[key] == value
