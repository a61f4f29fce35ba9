# test_cursor_renderer.py
#
# Run:
#   python -m unittest -v

import unittest

from cursor_renderer import annotate, cursor_marker, safe_insertion_point
from math_env_finder import MathEnvironmentLocator
from text_document import LiveDocument

COLOR = "#ff0000"
MARK = cursor_marker(COLOR)


class TestCursorMarker(unittest.TestCase):
    def test_marker_uses_html_color(self):
        self.assertEqual(MARK, r"{\color[HTML]{FF0000}\rule[-0.3ex]{0.06em}{2.2ex}}")


class TestAnnotate(unittest.TestCase):
    def setUp(self) -> None:
        self.locator = MathEnvironmentLocator()

    def annotate_at(self, text: str, offset: int) -> str:
        doc = LiveDocument(text)
        region = self.locator.find_innermost(doc, offset)
        self.assertIsNotNone(region)
        return annotate(doc, region, offset, COLOR)

    def test_plain_insertion(self):
        text = "$ab$"
        self.assertEqual(self.annotate_at(text, 2), "a" + MARK + "b")

    def test_insertion_at_region_edges(self):
        text = "$ab$"
        self.assertEqual(self.annotate_at(text, 1), MARK + "ab")
        self.assertEqual(self.annotate_at(text, 3), "ab" + MARK)

    def test_cursor_on_delimiters_clamps_to_content(self):
        text = r"$ab$ and \[cd\]"
        self.assertEqual(self.annotate_at(text, 0), MARK + "ab")
        self.assertEqual(self.annotate_at(text, text.index(r"\[")), MARK + "cd")
        self.assertEqual(self.annotate_at(text, len(text) - 1), "cd" + MARK)

    def test_escape_pair_is_never_split(self):
        text = r"$a\%b$"
        offset = text.index("%")  # between the backslash and '%'
        out = self.annotate_at(text, offset)
        self.assertIn(r"\%", out)
        self.assertEqual(out, "a\\%" + MARK + "b")

    def test_control_word_is_never_split(self):
        text = r"$x + \alpha$"
        offset = text.index("lpha")
        out = self.annotate_at(text, offset)
        self.assertEqual(out, "x + \\alpha" + MARK)

    def test_superscript_argument_stays_bound(self):
        text = "$x^2 + 1$"
        offset = text.index("^") + 1
        out = self.annotate_at(text, offset)
        self.assertEqual(out, "x^2" + MARK + " + 1")

    def test_superscript_brace_group_is_atomic(self):
        text = "$x_{ij} + 1$"
        offset = text.index("_") + 1
        out = self.annotate_at(text, offset)
        self.assertEqual(out, "x_{ij}" + MARK + " + 1")

    def test_inside_script_group_is_allowed(self):
        text = "$x^{ab}$"
        offset = text.index("b")
        out = self.annotate_at(text, offset)
        self.assertEqual(out, "x^{a" + MARK + "b}")

    def test_left_delimiter_stays_attached(self):
        text = r"$\left( a \right)$"
        offset = text.index("(")
        out = self.annotate_at(text, offset)
        self.assertTrue(out.startswith("\\left(" + MARK), out)

    def test_label_argument_is_atomic(self):
        text = r"\begin{equation}\label{eq:a} x \end{equation}"
        offset = text.index("eq:a") + 2
        out = self.annotate_at(text, offset)
        self.assertIn(r"\label{eq:a}" + MARK, out)

    def test_text_argument_is_atomic(self):
        text = r"\[ a \text{ if } b \]"
        out = self.annotate_at(text, text.index("if"))
        self.assertIn(r"\text{ if }" + MARK, out)

    def test_marker_stays_inside_environment_tokens(self):
        text = r"\begin{equation} x \end{equation}"
        out = self.annotate_at(text, text.index("quation"))
        self.assertTrue(out.startswith(r"\begin{equation}" + MARK), out)

        out = self.annotate_at(text, text.index(r"\end") + 3)
        self.assertTrue(out.endswith(MARK + r"\end{equation}"), out)

    def test_array_column_spec_is_skipped(self):
        text = r"\begin{array}{cc} a & b \end{array}"
        out = self.annotate_at(text, text.index("cc"))
        self.assertTrue(out.startswith(r"\begin{array}{cc}" + MARK), out)

    def test_offset_outside_region_returns_source_unchanged(self):
        text = "$ab$ and more"
        doc = LiveDocument(text)
        region = self.locator.find_innermost(doc, 2)
        self.assertEqual(annotate(doc, region, text.index("more"), COLOR), "ab")

    def test_comment_inside_math_is_not_used(self):
        text = "\\[ a % note\n b \\]"
        offset = text.index("note")
        out = self.annotate_at(text, offset)
        self.assertIn("% note\n" + MARK, out)


class TestSafeInsertionPoint(unittest.TestCase):
    def test_safe_point_unchanged_when_clear(self):
        self.assertEqual(safe_insertion_point("a+b", 1), 1)

    def test_clamps_into_limits(self):
        self.assertEqual(safe_insertion_point("abc", 10), 3)

    def test_moves_left_when_right_is_out_of_bounds(self):
        # the control word runs past the upper limit
        self.assertEqual(safe_insertion_point(r"a\beta", 3, 0, 4), 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
