import os
import sys
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from textpod.errors import ContentError  # noqa: E402
from textpod.schema import (  # noqa: E402
    DialogueEntry,
    canonical_json,
    content_hash,
    parse_metadata,
    parse_script,
    script_to_payload,
    validate_script_payload,
)


class ParseScriptTests(unittest.TestCase):
    def test_parses_noisy_output_into_entries(self) -> None:
        raw = (
            "Here you go:\n```json\n"
            '[{"persona": "narrator", "text": " Welcome back. "},\n'
            ' {"persona": "OPERATOR", "text": "Let us dig in."},]\n```'
        )
        entries = parse_script(raw)
        self.assertEqual(
            entries,
            [
                DialogueEntry(persona="NARRATOR", text="Welcome back."),
                DialogueEntry(persona="OPERATOR", text="Let us dig in."),
            ],
        )

    def test_unknown_persona_is_content_error(self) -> None:
        with self.assertRaises(ContentError) as ctx:
            parse_script('[{"persona": "HOST", "text": "hi"}]')
        self.assertIn("HOST", str(ctx.exception))

    def test_empty_text_is_content_error(self) -> None:
        with self.assertRaises(ContentError):
            parse_script('[{"persona": "HISTORIAN", "text": "   "}]')

    def test_non_string_text_is_content_error(self) -> None:
        with self.assertRaises(ContentError):
            validate_script_payload([{"persona": "HISTORIAN", "text": 12}])

    def test_empty_script_is_content_error(self) -> None:
        with self.assertRaises(ContentError):
            validate_script_payload([])

    def test_entries_are_frozen(self) -> None:
        entry = DialogueEntry(persona="NARRATOR", text="x")
        with self.assertRaises(Exception):
            entry.text = "y"  # type: ignore[misc]

    def test_payload_round_trip(self) -> None:
        entries = [DialogueEntry(persona="OPERATOR", text="a"), DialogueEntry(persona="HISTORIAN", text="b")]
        self.assertEqual(validate_script_payload(script_to_payload(entries)), entries)


class ParseMetadataTests(unittest.TestCase):
    def test_parses_and_normalizes(self) -> None:
        raw = (
            "Metadata follows.\n"
            '{"title": " Rust in the kernel ", "summary": "Why it matters.",\n'
            ' "published_at": "2024-03-01T10:00:00+02:00",\n'
            ' "related_links": ["https://a.example", "not a link", {"url": "https://b.example"},'
            ' "https://a.example", "https://c.example", "https://d.example", "https://e.example",'
            ' "https://f.example"]}'
        )
        meta = parse_metadata(raw)
        self.assertEqual(meta.title, "Rust in the kernel")
        self.assertEqual(meta.published_at, "2024-03-01T08:00:00Z")
        self.assertEqual(
            meta.related_links,
            ("https://a.example", "https://b.example", "https://c.example", "https://d.example", "https://e.example"),
        )

    def test_null_published_at(self) -> None:
        meta = parse_metadata('{"title": "T", "summary": "S", "published_at": null}')
        self.assertIsNone(meta.published_at)
        self.assertEqual(meta.related_links, ())

    def test_missing_summary_is_content_error(self) -> None:
        with self.assertRaises(ContentError):
            parse_metadata('{"title": "only a title"}')

    def test_related_links_must_be_list(self) -> None:
        with self.assertRaises(ContentError):
            parse_metadata('{"title": "T", "summary": "S", "related_links": "https://x"}')


class HashingTests(unittest.TestCase):
    def test_canonical_json_is_compact(self) -> None:
        self.assertEqual(canonical_json({"a": [1, "é"]}), '{"a":[1,"é"]}')

    def test_content_hash_is_sha256_hex(self) -> None:
        digest = content_hash("abc")
        self.assertEqual(len(digest), 64)
        self.assertEqual(digest, content_hash("abc"))


if __name__ == "__main__":
    unittest.main()
