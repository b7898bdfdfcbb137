#!/usr/bin/env python3
from __future__ import annotations

"""Script stage: generate the three-persona dialogue for the episode."""

import os
from dataclasses import dataclass
from typing import Any

from .config import GeneratorConfig
from .io_utils import atomic_write_json, atomic_write_text
from .orchestrator import StageContext, StageResult
from .prompts import SCRIPT_PROMPT_TEMPLATE, SCRIPT_SYSTEM_PROMPT, load_prompt_pair, render_prompt
from .schema import parse_script, script_to_payload

RAW_SCRIPT_FILENAME = "script.raw.txt"


@dataclass
class ScriptStage:
    generator: Any
    config: GeneratorConfig

    def __call__(self, ctx: StageContext) -> StageResult:
        prompts = load_prompt_pair(
            system_path=self.config.script_system_prompt_path,
            template_path=self.config.script_prompt_template_path,
            default_system=SCRIPT_SYSTEM_PROMPT,
            default_template=SCRIPT_PROMPT_TEMPLATE,
        )
        user_prompt = render_prompt(
            prompts.template,
            url=ctx.record.url,
            title=ctx.record.get("metadata_title", ""),
            summary=ctx.record.get("metadata_summary", ""),
        )
        ctx.logger.info("script_request", model=self.config.script_model, prompt_version=prompts.version)
        result = self.generator.generate(prompts.system, user_prompt, self.config.script_model)

        atomic_write_text(os.path.join(ctx.paths.episode_dir, RAW_SCRIPT_FILENAME), result.text)
        entries = parse_script(result.text)
        atomic_write_json(ctx.paths.script_file, script_to_payload(entries))

        personas = sorted({entry.persona for entry in entries})
        ctx.logger.info("script_parsed", segments=len(entries), personas=personas)
        return StageResult(
            fields={
                "script_model": result.model,
                "script_file_path": ctx.paths.script_file,
                "script_segment_count": len(entries),
                "script_input_tokens": result.input_tokens,
                "script_output_tokens": result.output_tokens,
            }
        )
