import unittest

from services.variables import (
    evaluate_condition, get_value, interpolate, interpolate_value,
    resolve_path, set_nested_value, to_number, to_text,
)


class TestInterpolation(unittest.TestCase):

    def test_plain_strings_are_returned_unchanged(self):
        text = "Hello there, no placeholders { here }"
        self.assertIs(interpolate(text, {"name": "Ada"}), text)
        self.assertEqual(interpolate(interpolate(text, {}), {}), text)

    def test_missing_path_renders_empty(self):
        self.assertEqual(interpolate("{{missing.path}}", {}), "")
        self.assertEqual(interpolate("Hi {{ customer.name }}!", {"customer": {}}), "Hi !")

    def test_nested_paths_and_list_indexes(self):
        variables = {"customer": {"name": "Ada"}, "orders": [{"id": "A1"}, {"id": "B2"}]}
        self.assertEqual(interpolate("{{customer.name}} / {{ orders.1.id }}", variables), "Ada / B2")

    def test_flat_dotted_key_fallback(self):
        self.assertEqual(interpolate("{{api.token}}", {"api.token": "xyz"}), "xyz")

    def test_value_rendering(self):
        variables = {"ok": True, "total": 12.0, "ratio": 0.5, "tags": ["a", "b"]}
        self.assertEqual(interpolate("{{ok}} {{total}} {{ratio}}", variables), "true 12 0.5")
        self.assertEqual(interpolate("{{tags}}", variables), '["a", "b"]')

    def test_non_strings_pass_through(self):
        self.assertEqual(interpolate(42, {}), 42)
        self.assertIsNone(interpolate(None, {}))

    def test_interpolate_value_walks_structures(self):
        body = {"user": "{{name}}", "items": ["{{a}}", 3], "flag": False}
        result = interpolate_value(body, {"name": "Ada", "a": "x"})
        self.assertEqual(result, {"user": "Ada", "items": ["x", 3], "flag": False})


class TestVariableEnvironment(unittest.TestCase):

    def test_set_nested_value_creates_dicts(self):
        variables = {"customer": "not a dict"}
        set_nested_value(variables, "customer.address.city", "Lagos")
        self.assertEqual(variables, {"customer": {"address": {"city": "Lagos"}}})

    def test_get_value_default(self):
        self.assertEqual(get_value({"a": 1}, "b", "fallback"), "fallback")

    def test_resolve_path_on_list_root(self):
        data = [{"name": "first"}, {"name": "second"}]
        self.assertEqual(resolve_path(data, "1.name"), "second")
        self.assertIs(resolve_path(data, ""), data)
        self.assertIsNone(resolve_path(data, "5.name"))

    def test_to_number_and_to_text(self):
        self.assertEqual(to_number("  7.5 "), 7.5)
        self.assertEqual(to_number("abc"), 0.0)
        self.assertEqual(to_number(True), 1.0)
        self.assertEqual(to_text(None), "")
        self.assertEqual(to_text(3.0), "3")


class TestConditions(unittest.TestCase):

    def test_string_operators_ignore_case(self):
        variables = {"reply": "  YES please "}
        self.assertTrue(evaluate_condition("reply", "starts_with", "yes", variables))
        self.assertTrue(evaluate_condition("reply", "contains", "PLEASE", variables))
        self.assertTrue(evaluate_condition("reply", "equals", "yes please", variables))
        self.assertTrue(evaluate_condition("reply", "not_contains", "no", variables))
        self.assertFalse(evaluate_condition("reply", "ends_with", "yes", variables))

    def test_numeric_operators_coerce(self):
        variables = {"age": "15", "score": "n/a"}
        self.assertFalse(evaluate_condition("age", "gt", "18", variables))
        self.assertTrue(evaluate_condition("age", "less_than", 18, variables))
        self.assertTrue(evaluate_condition("age", "gte", "15", variables))
        # Unparsable counts as zero
        self.assertTrue(evaluate_condition("score", "lte", "0", variables))

    def test_expected_value_is_interpolated(self):
        variables = {"answer": "42", "expected": {"answer": "42"}}
        self.assertTrue(evaluate_condition("answer", "equals", "{{expected.answer}}", variables))

    def test_exists(self):
        variables = {"empty": "", "zero": 0}
        self.assertFalse(evaluate_condition("empty", "exists", None, variables))
        self.assertTrue(evaluate_condition("zero", "exists", None, variables))
        self.assertTrue(evaluate_condition("missing", "not_exists", None, variables))

    def test_regex(self):
        variables = {"email": "ada@example.com"}
        self.assertTrue(evaluate_condition("email", "regex", r"@example\.com$", variables))
        self.assertFalse(evaluate_condition("email", "regex", "[unclosed", variables))

    def test_unknown_operator_is_false(self):
        with self.assertLogs("services.variables", level="WARNING"):
            self.assertFalse(evaluate_condition("a", "between", "1", {"a": "1"}))


if __name__ == '__main__':
    unittest.main()
