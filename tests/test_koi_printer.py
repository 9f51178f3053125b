import math
import pytest

from koi.koi_printer import Printer
from koi.koi_datatypes import UserFunction, NativeFunction


@pytest.fixture
def printer():
    return Printer()


# Test cases: (id, object, expected_string)
FORMAT_TEST_CASES = [
    ("str", "hello", "'hello'"),
    ("int_valued_float", 3.0, "3"),
    ("negative_int_valued", -2.0, "-2"),
    ("float", -1.5, "-1.5"),
    ("fraction", 0.1, "0.1"),
    ("huge", 1e20, "100000000000000000000"),
    ("huge_negative", -1e17, "-100000000000000000"),
    ("nan", math.nan, "NaN"),
    ("inf", math.inf, "inf"),
    ("neg_inf", -math.inf, "-inf"),
    ("bool_true", True, "true"),
    ("bool_false", False, "false"),
    ("nil", None, "nil"),
    ("empty_vec", [], "[]"),
    ("vec", [1.0, "a", None], "[1, 'a', nil]"),
    ("nested_vec", [[1.0], [2.0, 3.0]], "[[1], [2, 3]]"),
    ("empty_dict", {}, "{}"),
    ("dict", {"a": 1.0, "b": ["x"]}, "{a: 1, b: ['x']}"),
    ("user_fn", UserFunction("build", [], []), "<func build>"),
    ("native_fn", NativeFunction("len", len), "<native func len>"),
]


@pytest.mark.parametrize("obj, expected", [c[1:] for c in FORMAT_TEST_CASES], ids=[c[0] for c in FORMAT_TEST_CASES])
def test_pformat(printer, obj, expected):
    assert printer.pformat(obj) == expected


def test_to_str_leaves_strings_unquoted(printer):
    assert printer.to_str("hello") == "hello"
    assert printer.to_str(42.0) == "42"
    assert printer.to_str(["a"]) == "['a']"
    assert printer.to_str(None) == "nil"
