import os
import random
import sys
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from textpod.dialogue_chunker import chunk_dialogue, chunk_file_name  # noqa: E402
from textpod.schema import PERSONAS, DialogueEntry  # noqa: E402


def _e(persona: str, text: str) -> DialogueEntry:
    return DialogueEntry(persona=persona, text=text)


class DialogueChunkerTests(unittest.TestCase):
    def test_budget_overflow_splits_same_persona(self) -> None:
        entries = [_e("OPERATOR", "x" * 500), _e("OPERATOR", "y" * 500), _e("HISTORIAN", "z" * 10)]
        chunks = chunk_dialogue(entries, 800)
        self.assertEqual([list(c.entries) for c in chunks], [[entries[0]], [entries[1]], [entries[2]]])
        self.assertEqual([c.char_count for c in chunks], [500, 500, 10])

    def test_same_persona_packs_under_budget(self) -> None:
        entries = [_e("NARRATOR", "a" * 100), _e("NARRATOR", "b" * 100), _e("NARRATOR", "c" * 100)]
        chunks = chunk_dialogue(entries, 250)
        self.assertEqual([len(c.entries) for c in chunks], [2, 1])
        self.assertEqual(chunks[0].text, "a" * 100 + "\n" + "b" * 100)

    def test_exact_budget_fits(self) -> None:
        chunks = chunk_dialogue([_e("NARRATOR", "a" * 5), _e("NARRATOR", "b" * 5)], 10)
        self.assertEqual(len(chunks), 1)

    def test_persona_change_always_flushes(self) -> None:
        entries = [_e("OPERATOR", "a"), _e("HISTORIAN", "b"), _e("OPERATOR", "c")]
        chunks = chunk_dialogue(entries, 1000)
        self.assertEqual([c.persona for c in chunks], ["OPERATOR", "HISTORIAN", "OPERATOR"])

    def test_oversized_entry_stands_alone(self) -> None:
        entries = [_e("OPERATOR", "a" * 10), _e("OPERATOR", "b" * 50), _e("OPERATOR", "c" * 10)]
        chunks = chunk_dialogue(entries, 20)
        self.assertEqual([c.char_count for c in chunks], [10, 50, 10])
        self.assertEqual(chunks[1].entries, (entries[1],))

    def test_empty_input(self) -> None:
        self.assertEqual(chunk_dialogue([], 10), [])

    def test_non_positive_budget_rejected(self) -> None:
        for budget in (0, -5):
            with self.assertRaises(ValueError):
                chunk_dialogue([_e("OPERATOR", "a")], budget)

    def test_chunk_file_name(self) -> None:
        chunk = chunk_dialogue([_e("HISTORIAN", "a")], 10)[0]
        self.assertEqual(chunk_file_name(3, chunk), "0003-historian.mp3")


class DialogueChunkerFuzzTests(unittest.TestCase):
    def test_fuzz_invariants(self) -> None:
        rng = random.Random(12345)
        for _ in range(200):
            budget = rng.randint(1, 120)
            entries = [
                _e(rng.choice(PERSONAS), "w" * rng.randint(1, 150))
                for _ in range(rng.randint(0, 25))
            ]
            chunks = chunk_dialogue(entries, budget)

            rebuilt = [entry for chunk in chunks for entry in chunk.entries]
            self.assertEqual(rebuilt, entries)
            for chunk in chunks:
                self.assertTrue(chunk.entries)
                self.assertEqual({e.persona for e in chunk.entries}, {chunk.persona})
                self.assertEqual(chunk.char_count, sum(len(e.text) for e in chunk.entries))
                if chunk.char_count > budget:
                    self.assertEqual(len(chunk.entries), 1)
            for left, right in zip(chunks, chunks[1:]):
                merged = left.char_count + right.char_count
                same = left.persona == right.persona
                oversized = left.char_count > budget or right.char_count > budget
                # Greedy packing never leaves two mergeable neighbors apart.
                self.assertFalse(same and not oversized and merged <= budget)


if __name__ == "__main__":
    unittest.main()
