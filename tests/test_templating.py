"""Tests for ${name} templating and duration parsing."""
import json

import pytest

from utils.duration import parse_duration
from utils.errors import ConfigError, TemplateError
from utils.templating import render, render_json, render_value, single_token, stringify, variables


class TestRender:
    def test_substitutes_in_place(self):
        assert render("https://x/${id}/items", {"id": 42}) == "https://x/42/items"

    def test_multiple_tokens(self):
        assert render("${a}-${b}-${a}", {"a": "x", "b": "y"}) == "x-y-x"

    def test_no_tokens_is_identity(self):
        assert render("plain $5 text", {}) == "plain $5 text"

    def test_canonical_scalars(self):
        state = {"t": True, "f": False, "n": None, "d": {"k": 1}, "l": [1, 2]}
        assert render("${t} ${f} ${n}", state) == "true false null"
        assert render("${d}", state) == '{"k": 1}'
        assert render("${l}", state) == "[1, 2]"

    def test_missing_variable_fails(self):
        with pytest.raises(TemplateError, match="token"):
            render("Bearer ${token}", {})

    def test_unterminated_token(self):
        with pytest.raises(TemplateError, match="unterminated"):
            render("abc ${name", {"name": "x"})

    def test_empty_name(self):
        with pytest.raises(TemplateError):
            render("abc ${}", {})

    def test_variables(self):
        assert variables("${a} and ${b}") == ["a", "b"]

    def test_single_token(self):
        assert single_token("${a}") == "a"
        assert single_token("x${a}") is None
        assert single_token("${a}${b}") is None


class TestRenderValue:
    def test_whole_token_keeps_type(self):
        state = {"val": 42, "flag": True, "obj": {"a": [1]}}
        assert render_value({"a": "${val}"}, state) == {"a": 42}
        assert render_value("${flag}", state) is True
        assert render_value(["${obj}"], state) == [{"a": [1]}]

    def test_embedded_token_is_text(self):
        assert render_value({"msg": "qty=${q}"}, {"q": 3}) == {"msg": "qty=3"}

    def test_keys_are_rendered(self):
        assert render_value({"${k}": 1}, {"k": "name"}) == {"name": 1}

    def test_non_string_leaves_untouched(self):
        assert render_value({"n": 1.5, "b": None}, {}) == {"n": 1.5, "b": None}


class TestRenderJson:
    def test_round_trip_without_tokens(self):
        value = {"a": [1, 2.5, "x", None, True], "b": {"c": "d"}}
        assert json.loads(render_json(value, {})) == value

    def test_large_integers_survive(self):
        big = 2 ** 63 + 17
        body = render_json({"id": "${id}"}, {"id": big})
        assert json.loads(body) == {"id": big}
        assert str(big).encode() in body

    def test_templated_body(self):
        assert json.loads(render_json({"a": "${val}"}, {"val": 42})) == {"a": 42}


class TestStringify:
    def test_strings_untouched(self):
        assert stringify("x") == "x"

    def test_numbers(self):
        assert stringify(5) == "5"
        assert stringify(2.5) == "2.5"

    def test_integral_float_drops_fraction(self):
        assert stringify(5.0) == "5"
        assert stringify(-3.0) == "-3"
        assert stringify(1e21) == "1e+21"


class TestParseDuration:
    @pytest.mark.parametrize("text,seconds", [
        ("5s", 5.0), ("1m", 60.0), ("500ms", 0.5), ("1h30m", 5400.0),
        ("1.5s", 1.5), ("0", 0.0), (3, 3.0), ("250us", 0.00025),
    ])
    def test_valid(self, text, seconds):
        assert parse_duration(text) == pytest.approx(seconds)

    @pytest.mark.parametrize("text", ["", "abc", "5 parsecs", "-1s", "s", "2"])
    def test_invalid(self, text):
        with pytest.raises(ConfigError):
            parse_duration(text)
