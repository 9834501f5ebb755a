import pytest

from whoisp.services import prompt_store
from whoisp.services.prompt_store import render_localized, render_prompt


def test_render_prompt_substitutes_values():
    text = render_prompt("planner.question", query="Who is Ada Lovelace?")
    assert text == "Research question: Who is Ada Lovelace?"


def test_list_entries_are_joined_with_newlines():
    text = render_prompt("evidence.system_prompt")
    assert "\n" in text
    assert text.startswith("You are a meticulous research analyst.")


def test_unknown_key_raises():
    with pytest.raises(KeyError, match="Prompt key not found"):
        render_prompt("planner.missing")


def test_missing_value_names_the_placeholder():
    with pytest.raises(KeyError, match="query"):
        render_prompt("planner.question")


def test_render_localized_appends_language_directive():
    en = render_localized("planner.question", "en", query="q")
    ja = render_localized("planner.question", "ja", query="q")

    assert en.endswith("Respond in natural English.")
    assert ja.endswith("応答は自然な日本語で書いてください。")


def test_catalog_reloads_when_file_changes(tmp_path, monkeypatch):
    path = tmp_path / "prompts.json"
    path.write_text('{"greeting": "hello $name"}', encoding="utf-8")
    monkeypatch.setattr(prompt_store, "PROMPTS_PATH", path)
    monkeypatch.setattr(prompt_store, "_catalog_cache", None)
    monkeypatch.setattr(prompt_store, "_catalog_mtime_ns", None)

    assert render_prompt("greeting", name="ada") == "hello ada"

    path.write_text('{"greeting": "hi $name"}', encoding="utf-8")
    monkeypatch.setattr(prompt_store, "_catalog_mtime_ns", -1)

    assert render_prompt("greeting", name="ada") == "hi ada"
