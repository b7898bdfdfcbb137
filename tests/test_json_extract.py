import json
import os
import random
import string
import sys
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from textpod.errors import ContentError  # noqa: E402
from textpod.json_extract import (  # noqa: E402
    KIND_ARRAY,
    KIND_OBJECT,
    extract,
    find_balanced,
    iter_candidates,
    parse_structured,
    sanitize,
    strip_code_fences,
)


class StripCodeFencesTests(unittest.TestCase):
    def test_removes_fences_with_language_tag(self) -> None:
        self.assertEqual(strip_code_fences("```json\n[1]\n```"), "\n[1]\n")

    def test_plain_text_untouched(self) -> None:
        self.assertEqual(strip_code_fences("no fences here"), "no fences here")


class FindBalancedTests(unittest.TestCase):
    def test_brackets_inside_strings_are_ignored(self) -> None:
        text = '[{"text": "a ] b [ c"}] tail'
        end = find_balanced(text, 0, KIND_ARRAY)
        self.assertEqual(text[: end + 1], '[{"text": "a ] b [ c"}]')

    def test_escaped_quote_keeps_string_open(self) -> None:
        text = '{"a": "say \\"}\\" now"} rest'
        end = find_balanced(text, 0, KIND_OBJECT)
        self.assertEqual(text[end + 1 :], " rest")

    def test_unterminated_returns_none(self) -> None:
        self.assertIsNone(find_balanced('[1, [2, 3]', 0, KIND_ARRAY))

    def test_start_must_be_opening_bracket(self) -> None:
        with self.assertRaises(ValueError):
            find_balanced("x[1]", 0, KIND_ARRAY)


class IterCandidatesTests(unittest.TestCase):
    def test_resumes_after_each_candidate(self) -> None:
        self.assertEqual(list(iter_candidates("a [1] b [2, [3]] c", KIND_ARRAY)), ["[1]", "[2, [3]]"])

    def test_unbalanced_opener_is_skipped(self) -> None:
        self.assertEqual(list(iter_candidates("[ broken { [\"ok\"]", KIND_ARRAY)), ['["ok"]'])


class ExtractTests(unittest.TestCase):
    def test_fenced_example_returned_unchanged(self) -> None:
        raw = 'Here is the answer:\n```json\n[{"persona":"X","text":"a,"}]\n```\nThanks!'
        found = extract(raw, KIND_ARRAY)
        self.assertEqual(found, '[{"persona":"X","text":"a,"}]')
        self.assertEqual(sanitize(found), found)

    def test_decoy_array_is_skipped_with_required_fields(self) -> None:
        raw = (
            "Sources used: [1, 2, 3]. Also see [\"a\", \"b\"].\n"
            '[{"persona": "NARRATOR", "text": "Welcome."}, {"persona": "OPERATOR", "text": "Hi."}]'
        )
        found = extract(raw, KIND_ARRAY, ("persona", "text"))
        self.assertEqual(json.loads(found)[0]["persona"], "NARRATOR")

    def test_object_with_missing_field_is_skipped(self) -> None:
        raw = '{"note": "draft"} then {"title": "T", "summary": "S"}'
        found = extract(raw, KIND_OBJECT, ("title", "summary"))
        self.assertEqual(json.loads(found), {"title": "T", "summary": "S"})

    def test_not_found(self) -> None:
        self.assertIsNone(extract("nothing structured", KIND_ARRAY))
        self.assertIsNone(extract("[1, 2]", KIND_ARRAY, ("persona", "text")))

    def test_empty_array_does_not_match_shape(self) -> None:
        self.assertIsNone(extract("[] and []", KIND_ARRAY, ("persona",)))


class SanitizeTests(unittest.TestCase):
    def test_escapes_raw_newline_and_tab_inside_strings(self) -> None:
        fixed = sanitize('[{"text": "line one\nline\ttwo"}]')
        self.assertEqual(json.loads(fixed), [{"text": "line one\nline\ttwo"}])

    def test_escapes_other_control_chars(self) -> None:
        fixed = sanitize('{"a": "bell\x07"}')
        self.assertIn("\\u0007", fixed)
        self.assertEqual(json.loads(fixed), {"a": "bell\x07"})

    def test_removes_trailing_commas(self) -> None:
        fixed = sanitize('{"a": [1, 2, ], "b": 3,\n}')
        self.assertEqual(json.loads(fixed), {"a": [1, 2], "b": 3})

    def test_repeated_trailing_commas(self) -> None:
        self.assertEqual(json.loads(sanitize("[1,, ,]")), [1])

    def test_comma_inside_string_untouched(self) -> None:
        text = '{"a": "x,}"}'
        self.assertEqual(sanitize(text), text)

    def test_valid_json_is_noop(self) -> None:
        text = json.dumps({"k": ["a\nb", {"z": 1}], "q": "\"quoted\""}, indent=2)
        self.assertEqual(sanitize(text), text)

    def test_idempotent_on_random_noise(self) -> None:
        rng = random.Random(2024)
        alphabet = string.ascii_letters + ' ,[]{}":\\\n\t\r\x01'
        for _ in range(300):
            text = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 60)))
            once = sanitize(text)
            self.assertEqual(sanitize(once), once, msg=repr(text))

    def test_never_changes_brackets_or_quotes(self) -> None:
        rng = random.Random(7)
        alphabet = 'ab ,[]{}"\\\n'
        for _ in range(200):
            text = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 40)))
            strip = lambda s: [c for c in s if c in '[]{}"']  # noqa: E731
            self.assertEqual(strip(sanitize(text)), strip(text))


class RoundTripTests(unittest.TestCase):
    def test_dialogue_array_survives_noise_and_decoys(self) -> None:
        rng = random.Random(99)
        for _ in range(50):
            dialogue = [
                {"persona": rng.choice(["OPERATOR", "HISTORIAN", "NARRATOR"]), "text": f"turn {i} [x] {{y}}"}
                for i in range(rng.randint(1, 6))
            ]
            prefix = "".join(rng.choice(string.ascii_letters + " .:") for _ in range(rng.randint(0, 30)))
            decoy = json.dumps([rng.randint(0, 9) for _ in range(rng.randint(1, 4))])
            suffix = "".join(rng.choice(string.ascii_letters + " .") for _ in range(rng.randint(0, 30)))
            raw = f"{prefix} {decoy}\n```json\n{json.dumps(dialogue)}\n```\n{suffix}"
            found = extract(raw, KIND_ARRAY, ("persona", "text"))
            self.assertIsNotNone(found)
            self.assertEqual(json.loads(sanitize(found)), dialogue)


class ParseStructuredTests(unittest.TestCase):
    def test_repairs_and_parses(self) -> None:
        raw = 'Sure!\n[{"persona": "NARRATOR", "text": "Hello\nthere",},]'
        self.assertEqual(
            parse_structured(raw, KIND_ARRAY, ("persona", "text")),
            [{"persona": "NARRATOR", "text": "Hello\nthere"}],
        )

    def test_missing_structure_raises_content_error(self) -> None:
        with self.assertRaises(ContentError) as ctx:
            parse_structured("I could not do that.", KIND_OBJECT, label="metadata output")
        self.assertIn("metadata output", str(ctx.exception))
        self.assertEqual(ctx.exception.error_kind, "invalid_content")

    def test_unrepairable_structure_raises_content_error(self) -> None:
        with self.assertRaises(ContentError):
            parse_structured("[1 2]", KIND_ARRAY)


if __name__ == "__main__":
    unittest.main()
