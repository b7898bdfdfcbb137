import dataclasses
import json
import os
import sys
import tempfile
import unittest
from datetime import datetime, timezone


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from textpod.audio_stage import AudioStage, load_script_file  # noqa: E402
from textpod.config import AudioConfig, GeneratorConfig, LoggingConfig, PublishConfig  # noqa: E402
from textpod.episode_store import EpisodeStore  # noqa: E402
from textpod.errors import ContentError, DuplicateError, ExternalToolError  # noqa: E402
from textpod.feed_merger import Enclosure, FeedDocument, FeedItem  # noqa: E402
from textpod.logging_utils import Logger  # noqa: E402
from textpod.merge_stage import MergeStage, resolve_chunk_files  # noqa: E402
from textpod.metadata_stage import MetadataStage  # noqa: E402
from textpod.openai_client import GenerationResult  # noqa: E402
from textpod.orchestrator import EpisodePaths, StageContext  # noqa: E402
from textpod.publish_stage import PublishStage  # noqa: E402
from textpod.rss_feed import parse_feed_xml, render_feed_xml  # noqa: E402
from textpod.script_stage import ScriptStage  # noqa: E402
from textpod.stages import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING  # noqa: E402

URL = "https://example.com/posts/rust-in-the-kernel"

METADATA_REPLY = """Here you go:
```json
{"title": "Rust in the Kernel", "summary": "Why drivers are moving.",
 "published_at": "2024-02-01T10:00:00+02:00",
 "related_links": ["https://lwn.net/a", "ftp://bad", "https://lwn.net/a"],}
```"""

SCRIPT_REPLY = json.dumps(
    [
        {"persona": "narrator", "text": "Welcome."},
        {"persona": "OPERATOR", "text": "Drivers first."},
        {"persona": "OPERATOR", "text": "Then subsystems."},
        {"persona": "HISTORIAN", "text": "It started in 2020."},
    ]
)


class _FakeGenerator:
    def __init__(self, text: str) -> None:
        self.text = text
        self.calls = []

    def generate(self, system_prompt: str, user_prompt: str, model: str) -> GenerationResult:
        self.calls.append((system_prompt, user_prompt, model))
        return GenerationResult(text=self.text, input_tokens=100, output_tokens=50, model=f"{model}-snapshot")


class _FakeSynthesizer:
    def __init__(self) -> None:
        self.calls = []

    def synthesize(self, text, voice, model=None, instructions=None):  # noqa: ANN001, ANN201
        self.calls.append((text, voice, model, instructions))
        return f"ID3:{voice}:{text}".encode("utf-8")


class _FakeMixer:
    def __init__(self, duration: float = 2.5) -> None:
        self.duration = duration
        self.concat_inputs = None

    def with_bumpers(self, files):  # noqa: ANN001, ANN201
        return ["intro.mp3"] + list(files)

    def concat(self, files, out_path, *, list_path=None):  # noqa: ANN001, ANN201
        self.concat_inputs = list(files)
        os.makedirs(os.path.dirname(out_path), exist_ok=True)
        with open(out_path, "wb") as f:
            f.write(b"merged-audio")
        return out_path

    def measure_duration(self, path):  # noqa: ANN001, ANN201
        return self.duration


class _FakeUploader:
    def __init__(self, config: PublishConfig, fail_keys=()) -> None:  # noqa: ANN001
        self.config = config
        self.fail_keys = set(fail_keys)
        self.uploads = []

    def upload(self, local_path, key, *, mime_type=None):  # noqa: ANN001, ANN201
        if key in self.fail_keys:
            raise ExternalToolError(f"upload of {key} failed")
        self.uploads.append((local_path, key, mime_type))
        return self.config.public_url(key)


class _StageTestBase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = EpisodeStore(":memory:")
        self.record, _ = self.store.find_or_create(URL)
        self.episode_id = self.record.episode_id
        self.paths = EpisodePaths.for_episode(os.path.join(self.tmp.name, "episodes"), self.episode_id)
        self.logger = Logger.create(
            LoggingConfig(level="ERROR", heartbeat_seconds=1, debug_events=False, include_event_ids=False)
        )

    def tearDown(self) -> None:
        self.store.close()
        self.tmp.cleanup()

    def _complete(self, stage: str, fields: dict) -> None:
        self.store.update_stage(self.episode_id, stage, STATUS_COMPLETED, fields)

    def _ctx(self, *, force: bool = False, dry_run: bool = False) -> StageContext:
        return StageContext(
            record=self.store.get(self.episode_id),
            settings=None,
            paths=self.paths,
            logger=self.logger,
            force=force,
            dry_run=dry_run,
        )


class MetadataAndScriptStageTests(_StageTestBase):
    def test_metadata_stage_parses_and_persists(self) -> None:
        generator = _FakeGenerator(METADATA_REPLY)
        config = dataclasses.replace(GeneratorConfig.from_env(), metadata_model="meta-model")
        result = MetadataStage(generator, config)(self._ctx())

        _, user_prompt, model = generator.calls[0]
        self.assertIn(URL, user_prompt)
        self.assertEqual(model, "meta-model")
        fields = result.fields
        self.assertEqual(fields["metadata_title"], "Rust in the Kernel")
        self.assertEqual(fields["metadata_published_at"], "2024-02-01T08:00:00Z")
        self.assertEqual(fields["metadata_related_links"], ["https://lwn.net/a"])
        self.assertEqual(fields["metadata_model"], "meta-model-snapshot")
        self.assertEqual(fields["metadata_input_tokens"], 100)
        with open(self.paths.metadata_file, "r", encoding="utf-8") as f:
            saved = json.load(f)
        self.assertEqual(saved["episode_id"], self.episode_id)
        self.assertTrue(os.path.isfile(os.path.join(self.paths.episode_dir, "metadata.raw.txt")))

    def test_metadata_stage_keeps_raw_output_on_parse_failure(self) -> None:
        stage = MetadataStage(_FakeGenerator("I could not read that page."), GeneratorConfig.from_env())
        with self.assertRaises(ContentError):
            stage(self._ctx())
        with open(os.path.join(self.paths.episode_dir, "metadata.raw.txt"), "r", encoding="utf-8") as f:
            self.assertEqual(f.read(), "I could not read that page.")
        self.assertFalse(os.path.exists(self.paths.metadata_file))

    def test_script_stage_uses_metadata_and_writes_script(self) -> None:
        self._complete("metadata", {"metadata_title": "Rust in the Kernel", "metadata_summary": "Why drivers."})
        generator = _FakeGenerator("```\n" + SCRIPT_REPLY + "\n```")
        result = ScriptStage(generator, GeneratorConfig.from_env())(self._ctx())

        _, user_prompt, _ = generator.calls[0]
        self.assertIn("Rust in the Kernel", user_prompt)
        self.assertIn("Why drivers.", user_prompt)
        self.assertIn('{"persona", "text"}', user_prompt)
        self.assertEqual(result.fields["script_segment_count"], 4)
        entries = load_script_file(self.paths.script_file)
        self.assertEqual(entries[0].persona, "NARRATOR")

    def test_script_stage_prompt_override_file(self) -> None:
        template = os.path.join(self.tmp.name, "script_template.txt")
        with open(template, "w", encoding="utf-8") as f:
            f.write("Custom for {title} at {url} with {{braces}}")
        config = dataclasses.replace(GeneratorConfig.from_env(), script_prompt_template_path=template)
        self._complete("metadata", {"metadata_title": "T", "metadata_summary": "S"})
        generator = _FakeGenerator(SCRIPT_REPLY)
        ScriptStage(generator, config)(self._ctx())
        self.assertEqual(generator.calls[0][1], f"Custom for T at {URL} with {{braces}}")


class AudioAndMergeStageTests(_StageTestBase):
    def _write_script(self) -> None:
        os.makedirs(self.paths.episode_dir, exist_ok=True)
        with open(self.paths.script_file, "w", encoding="utf-8") as f:
            f.write(SCRIPT_REPLY)
        self._complete("script", {"script_file_path": self.paths.script_file})

    def test_audio_stage_synthesizes_chunks_in_order(self) -> None:
        self._write_script()
        os.makedirs(self.paths.chunks_dir, exist_ok=True)
        stale = os.path.join(self.paths.chunks_dir, "0009-operator.mp3")
        with open(stale, "wb") as f:
            f.write(b"old")
        synth = _FakeSynthesizer()
        config = dataclasses.replace(AudioConfig.from_env(), max_script_chars=900)
        result = AudioStage(synth, config, "tts-x")(self._ctx())

        self.assertEqual(
            [(text, voice) for text, voice, _, _ in synth.calls],
            [
                ("Welcome.", config.narrator_voice),
                ("Drivers first.\nThen subsystems.", config.operator_voice),
                ("It started in 2020.", config.historian_voice),
            ],
        )
        self.assertEqual({model for _, _, model, _ in synth.calls}, {"tts-x"})
        self.assertEqual(synth.calls[0][3], config.narrator_instructions)
        self.assertFalse(os.path.exists(stale))
        self.assertEqual(
            result.fields["audio_files"],
            [
                os.path.join("chunks", "0001-narrator.mp3"),
                os.path.join("chunks", "0002-operator.mp3"),
                os.path.join("chunks", "0003-historian.mp3"),
            ],
        )
        self.assertEqual(result.fields["audio_chunk_count"], 3)
        self.assertIsNone(result.fields["audio_total_duration_sec"])

    def test_audio_stage_totals_measured_durations(self) -> None:
        self._write_script()
        result = AudioStage(_FakeSynthesizer(), AudioConfig.from_env(), "tts-x", mixer=_FakeMixer(1.25))(self._ctx())
        self.assertEqual(result.fields["audio_total_duration_sec"], 3.75)

    def test_audio_stage_rejects_bad_script_file(self) -> None:
        os.makedirs(self.paths.episode_dir, exist_ok=True)
        with open(self.paths.script_file, "w", encoding="utf-8") as f:
            f.write('[{"persona": "GHOST", "text": "boo"}]')
        with self.assertRaises(ContentError):
            AudioStage(_FakeSynthesizer(), AudioConfig.from_env(), "tts-x")(self._ctx())

    def test_merge_stage_uses_recorded_chunks(self) -> None:
        os.makedirs(self.paths.chunks_dir, exist_ok=True)
        rel = [os.path.join("chunks", "0001-narrator.mp3"), os.path.join("chunks", "0002-operator.mp3")]
        for name in rel:
            with open(os.path.join(self.paths.episode_dir, name), "wb") as f:
                f.write(b"chunk")
        self._complete("audio", {"audio_files": rel})
        mixer = _FakeMixer(42.0)
        result = MergeStage(mixer)(self._ctx())

        self.assertEqual(mixer.concat_inputs, ["intro.mp3"] + [os.path.join(self.paths.episode_dir, r) for r in rel])
        self.assertEqual(result.fields["merged_audio_path"], self.paths.merged_file)
        self.assertEqual(result.fields["merged_audio_bytes"], len(b"merged-audio"))
        self.assertEqual(result.fields["merged_audio_duration_sec"], 42.0)
        self.assertEqual(len(result.fields["merged_audio_checksum"]), 64)

    def test_merge_falls_back_to_sorted_chunk_dir(self) -> None:
        os.makedirs(self.paths.chunks_dir, exist_ok=True)
        for name in ("0002-operator.mp3", "0001-narrator.mp3"):
            with open(os.path.join(self.paths.chunks_dir, name), "wb") as f:
                f.write(b"chunk")
        files = resolve_chunk_files(self._ctx())
        self.assertEqual([os.path.basename(p) for p in files], ["0001-narrator.mp3", "0002-operator.mp3"])

    def test_merge_reports_missing_chunks(self) -> None:
        with self.assertRaises(ContentError):
            resolve_chunk_files(self._ctx())
        self._complete("audio", {"audio_files": ["chunks/0001-narrator.mp3"]})
        with self.assertRaises(ContentError):
            resolve_chunk_files(self._ctx())


class PublishStageTests(_StageTestBase):
    NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)

    def setUp(self) -> None:
        super().setUp()
        self.config = dataclasses.replace(
            PublishConfig.from_env(feed_source="remote"),
            origin="https://cdn.example.com",
            feed_key="podcast/podcast.xml",
            audio_prefix="podcast/episodes",
            cover_art_path=None,
        )
        self.feed_path = os.path.join(self.tmp.name, "episodes", "podcast.xml")
        os.makedirs(self.paths.episode_dir, exist_ok=True)
        with open(self.paths.merged_file, "wb") as f:
            f.write(b"x" * 321)
        self._complete(
            "metadata",
            {"metadata_title": "Rust in the Kernel", "metadata_summary": "Why drivers are moving."},
        )
        self._complete("merge", {"merged_audio_path": self.paths.merged_file, "merged_audio_duration_sec": 95.0})
        self.remote_feed = None
        self.fetched = []

    def _fetch(self, url: str):  # noqa: ANN202
        self.fetched.append(url)
        return self.remote_feed

    def _stage(self, uploader=None, config=None) -> PublishStage:  # noqa: ANN001
        config = config or self.config
        return PublishStage(
            uploader or _FakeUploader(config),
            config,
            self.feed_path,
            fetch_feed=self._fetch,
            clock=lambda: self.NOW,
        )

    def _existing_feed(self, guid: str) -> str:
        item = FeedItem(
            guid=guid,
            title="Earlier",
            description="Earlier episode",
            pub_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
            enclosure=Enclosure(url="https://cdn.example.com/podcast/episodes/old.mp3", length=10),
        )
        return render_feed_xml(FeedDocument(title="Existing Show", items=(item,)))

    def test_publish_uploads_audio_before_feed(self) -> None:
        self.remote_feed = self._existing_feed("older-episode")
        uploader = _FakeUploader(self.config)
        result = self._stage(uploader)(self._ctx())

        self.assertEqual(self.fetched, ["https://cdn.example.com/podcast/podcast.xml"])
        self.assertEqual(
            [(key, mime) for _, key, mime in uploader.uploads],
            [
                (f"podcast/episodes/{self.episode_id}.mp3", "audio/mpeg"),
                ("podcast/podcast.xml", "application/rss+xml"),
            ],
        )
        self.assertTrue(result.completed)
        self.assertEqual(result.fields["publish_at"], "2024-03-01T09:30:00Z")
        self.assertEqual(
            result.fields["publish_audio_remote_path"],
            f"https://cdn.example.com/podcast/episodes/{self.episode_id}.mp3",
        )
        with open(self.feed_path, "r", encoding="utf-8") as f:
            doc = parse_feed_xml(f.read())
        self.assertEqual(doc.title, "Existing Show")
        self.assertEqual([i.guid for i in doc.items], ["older-episode", self.episode_id])
        new_item = doc.items[-1]
        self.assertEqual(new_item.title, "Rust in the Kernel")
        self.assertEqual(new_item.enclosure.length, 321)
        self.assertEqual(new_item.duration_sec, 95.0)

    def test_dry_run_writes_feed_without_uploading(self) -> None:
        uploader = _FakeUploader(self.config)
        result = self._stage(uploader)(self._ctx(dry_run=True))
        self.assertFalse(result.completed)
        self.assertEqual(uploader.uploads, [])
        self.assertNotIn("publish_at", result.fields)
        with open(self.feed_path, "r", encoding="utf-8") as f:
            doc = parse_feed_xml(f.read())
        self.assertEqual(doc.title, self.config.feed.title)
        self.assertEqual([i.guid for i in doc.items], [self.episode_id])

    def test_duplicate_without_force_uploads_nothing(self) -> None:
        self.remote_feed = self._existing_feed(self.episode_id)
        uploader = _FakeUploader(self.config)
        with self.assertRaises(DuplicateError):
            self._stage(uploader)(self._ctx())
        self.assertEqual(uploader.uploads, [])
        self.assertFalse(os.path.exists(self.feed_path))

    def test_force_replaces_existing_item(self) -> None:
        self.remote_feed = self._existing_feed(self.episode_id)
        self._stage()(self._ctx(force=True))
        with open(self.feed_path, "r", encoding="utf-8") as f:
            doc = parse_feed_xml(f.read())
        self.assertEqual(len(doc.items), 1)
        self.assertEqual(doc.items[0].title, "Rust in the Kernel")

    def test_local_feed_source_reads_file(self) -> None:
        config = dataclasses.replace(self.config, feed_source="local")
        os.makedirs(os.path.dirname(self.feed_path), exist_ok=True)
        with open(self.feed_path, "w", encoding="utf-8") as f:
            f.write(self._existing_feed("local-one"))
        self._stage(config=config)(self._ctx())
        self.assertEqual(self.fetched, [])
        with open(self.feed_path, "r", encoding="utf-8") as f:
            doc = parse_feed_xml(f.read())
        self.assertEqual([i.guid for i in doc.items], ["local-one", self.episode_id])

    def test_local_dry_run_then_real_run_keeps_one_item(self) -> None:
        config = dataclasses.replace(self.config, feed_source="local")
        dry = self._stage(config=config)(self._ctx(dry_run=True))
        self.store.update_stage(self.episode_id, "publish", STATUS_PENDING, dry.fields)

        uploader = _FakeUploader(config)
        result = self._stage(uploader, config)(self._ctx())
        self.assertTrue(result.completed)
        self.assertEqual(len(uploader.uploads), 2)
        with open(self.feed_path, "r", encoding="utf-8") as f:
            doc = parse_feed_xml(f.read())
        self.assertEqual([i.guid for i in doc.items], [self.episode_id])

    def test_retry_after_failed_upload_republishes(self) -> None:
        config = dataclasses.replace(self.config, feed_source="local")
        audio_key = config.audio_key(self.episode_id)
        with self.assertRaises(ExternalToolError):
            self._stage(_FakeUploader(config, fail_keys={audio_key}), config)(self._ctx())
        self.assertFalse(os.path.exists(self.feed_path))

        with self.assertRaises(ExternalToolError):
            self._stage(_FakeUploader(config, fail_keys={config.feed_key}), config)(self._ctx())
        self.assertTrue(os.path.exists(self.feed_path))
        self.store.update_stage(self.episode_id, "publish", STATUS_FAILED, error="upload failed")

        uploader = _FakeUploader(config)
        result = self._stage(uploader, config)(self._ctx())
        self.assertTrue(result.completed)
        with open(self.feed_path, "r", encoding="utf-8") as f:
            doc = parse_feed_xml(f.read())
        self.assertEqual([i.guid for i in doc.items], [self.episode_id])

    def test_completed_publish_still_rejects_duplicate(self) -> None:
        self._complete("publish", {"publish_at": "2024-02-01T00:00:00Z"})
        own = FeedItem(
            guid=self.episode_id,
            title="Earlier",
            description="",
            pub_date=self.NOW,
            enclosure=Enclosure(url=self.config.public_url(self.config.audio_key(self.episode_id)), length=1),
        )
        self.remote_feed = render_feed_xml(FeedDocument(title="Existing Show", items=(own,)))
        with self.assertRaises(DuplicateError):
            self._stage()(self._ctx())

    def test_cover_art_failure_is_tolerated(self) -> None:
        art = os.path.join(self.tmp.name, "cover.png")
        with open(art, "wb") as f:
            f.write(b"png")
        config = dataclasses.replace(self.config, cover_art_path=art)
        uploader = _FakeUploader(config, fail_keys={config.cover_art_key})
        result = self._stage(uploader, config)(self._ctx())
        self.assertTrue(result.completed)
        self.assertEqual(len(uploader.uploads), 2)

    def test_missing_merged_audio(self) -> None:
        os.remove(self.paths.merged_file)
        with self.assertRaises(ContentError):
            self._stage()(self._ctx())


if __name__ == "__main__":
    unittest.main()
