"""Tests for configuration helpers."""

import json

from webchat_rpc.config import as_bool, clamp_int, load_selectors
from webchat_rpc.constants import DEFAULT_SELECTORS


class TestClampInt:
    def test_in_range(self):
        assert clamp_int("7", 1, 50, 12) == 7

    def test_clamped_not_rejected(self):
        assert clamp_int("0", 1, 50, 12) == 1
        assert clamp_int("500", 1, 50, 12) == 50
        assert clamp_int(-3, 0, 600, 0) == 0

    def test_garbage_uses_fallback(self):
        assert clamp_int(None, 1, 50, 12) == 12
        assert clamp_int("lots", 1, 50, 12) == 12

    def test_float_strings(self):
        assert clamp_int("2.9", 1, 50, 12) == 2


def test_as_bool():
    assert as_bool("yes")
    assert as_bool(" TRUE ")
    assert not as_bool("off", fallback=True)
    assert as_bool("maybe", fallback=True)
    assert not as_bool(None)


class TestLoadSelectors:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_selectors(tmp_path / "absent.json") == DEFAULT_SELECTORS

    def test_override_known_keys_only(self, tmp_path):
        path = tmp_path / "selectors.json"
        path.write_text(
            json.dumps(
                {
                    "send_button": "button.go",
                    "stop_button": "   ",
                    "assistant_message": 42,
                    "unknown": "div",
                }
            )
        )
        selectors = load_selectors(path)
        assert selectors["send_button"] == "button.go"
        assert selectors["stop_button"] == DEFAULT_SELECTORS["stop_button"]
        assert selectors["assistant_message"] == DEFAULT_SELECTORS["assistant_message"]
        assert "unknown" not in selectors

    def test_invalid_json_gives_defaults(self, tmp_path):
        path = tmp_path / "selectors.json"
        path.write_text("{not json")
        assert load_selectors(path) == DEFAULT_SELECTORS

    def test_non_object_gives_defaults(self, tmp_path):
        path = tmp_path / "selectors.json"
        path.write_text("[1, 2]")
        assert load_selectors(path) == DEFAULT_SELECTORS
