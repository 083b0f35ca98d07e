#!filepath: tests/test_prompt_template.py
from __future__ import annotations

from pathlib import Path

import pytest

from ontario_obits_app.prompts.template import PromptTemplate, load_prompt
from ontario_obits_app.utils.project_paths import ProjectPaths


def test_scraped_text_with_braces_is_not_expanded() -> None:
    tpl = PromptTemplate(name="t", text="FACTS:\n{{FACTS}}\n\nTEXT:\n{{DESCRIPTION}}\n")
    out = tpl.render({"FACTS": "Name: Jane Doe", "DESCRIPTION": "Loved {{FACTS}} and puzzles."})
    assert out == "FACTS:\nName: Jane Doe\n\nTEXT:\nLoved {{FACTS}} and puzzles."


def test_missing_value_raises() -> None:
    tpl = PromptTemplate(name="rewrite_user", text="{{FACTS}} {{DESCRIPTION}}")
    with pytest.raises(ValueError, match="DESCRIPTION"):
        tpl.render({"FACTS": "x"})


def test_shipped_rewrite_prompt_renders() -> None:
    tpl = load_prompt(ProjectPaths.discover().prompts_dir, "rewrite_user")
    assert tpl.placeholders == {"FACTS", "DESCRIPTION"}
    out = tpl.render({"FACTS": "Name: Jane Doe", "DESCRIPTION": "Jane passed away."})
    assert "Name: Jane Doe" in out
    assert "{{" not in out


def test_unknown_prompt_name(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_prompt(tmp_path, "nope")
