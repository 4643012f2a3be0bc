# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

from __future__ import annotations

import unicodedata

import pytest

from .. import generate_episode_file_name, normalize_path, sanitize_file_name

EPISODE = {
    "episode_name": "Deep Work: Rules for Focus?",
    "episode_duration": "1h 2m",
    "episode_publish_date": "2024-05-01",
    "episode_url": "https://share.example.com/e/1",
}


class TestSanitizeFileName:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Plain title", "Plain title"),
            ("a/b\\c:d", "a_b_c_d"),
            ("[tag] #1 ^x |y", "_tag_ _1 _x _y"),
            ('<q>"*?', "_q____"),
            ("tab\tnewline\n", "tab_newline_"),
            ("trailing dots...", "trailing dots"),
            ("", "untitled"),
            ("...", "untitled"),
        ],
    )
    def test_replaces_illegal_characters(self, name, expected):
        assert sanitize_file_name(name) == expected

    def test_bounds_length(self):
        assert sanitize_file_name("x" * 300) == "x" * 150
        assert sanitize_file_name("abc def", max_length=4) == "abc"


class TestNormalizePath:
    def test_collapses_separators(self):
        assert normalize_path("\\Snipd//Show/./ep.md/") == "Snipd/Show/./ep.md"

    def test_applies_nfc(self):
        decomposed = unicodedata.normalize("NFD", "Café/é.md")
        assert normalize_path(decomposed) == unicodedata.normalize("NFC", "Café/é.md")

    def test_empty_is_root(self):
        assert normalize_path("//") == "/"


class TestGenerateEpisodeFileName:
    def test_default_template_uses_title(self):
        assert generate_episode_file_name(EPISODE, "e1") == "Deep Work_ Rules for Focus_"

    def test_custom_template(self):
        name = generate_episode_file_name(
            EPISODE, "e1", "{{episode_publish_date}} {{episode_title}} ({{episode_duration}})"
        )
        assert name == "2024-05-01 Deep Work_ Rules for Focus_ (1h 2m)"

    def test_section_syntax_renders_value_only(self):
        name = generate_episode_file_name(
            EPISODE, "e1", "{{episode_publish_date}}[[Published: ]] - {{episode_title}}"
        )
        assert name == "2024-05-01 - Deep Work_ Rules for Focus_"

    def test_unknown_variable_renders_empty(self):
        name = generate_episode_file_name(EPISODE, "e1", "{{nope}}{{episode_title}}")
        assert name == "Deep Work_ Rules for Focus_"

    def test_blank_result_falls_back_to_name(self):
        name = generate_episode_file_name({"episode_name": "Title"}, "e1", "{{episode_url}}")
        assert name == "Title"

    def test_missing_data_uses_id(self):
        assert generate_episode_file_name(None, "ep/42") == "ep_42"
