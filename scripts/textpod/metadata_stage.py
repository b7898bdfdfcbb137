#!/usr/bin/env python3
from __future__ import annotations

"""Metadata stage: ask the generator for title, summary and sources of the URL."""

import os
from dataclasses import dataclass
from typing import Any

from .config import GeneratorConfig
from .io_utils import atomic_write_json, atomic_write_text
from .orchestrator import StageContext, StageResult
from .prompts import METADATA_PROMPT_TEMPLATE, METADATA_SYSTEM_PROMPT, load_prompt_pair, render_prompt
from .schema import parse_metadata

RAW_METADATA_FILENAME = "metadata.raw.txt"


@dataclass
class MetadataStage:
    generator: Any
    config: GeneratorConfig

    def __call__(self, ctx: StageContext) -> StageResult:
        prompts = load_prompt_pair(
            system_path=self.config.metadata_system_prompt_path,
            template_path=self.config.metadata_prompt_template_path,
            default_system=METADATA_SYSTEM_PROMPT,
            default_template=METADATA_PROMPT_TEMPLATE,
        )
        user_prompt = render_prompt(prompts.template, url=ctx.record.url)
        ctx.logger.info("metadata_request", model=self.config.metadata_model, prompt_version=prompts.version)
        result = self.generator.generate(prompts.system, user_prompt, self.config.metadata_model)

        # Raw output is kept even when parsing fails below.
        atomic_write_text(os.path.join(ctx.paths.episode_dir, RAW_METADATA_FILENAME), result.text)
        metadata = parse_metadata(result.text)

        payload = metadata.to_dict()
        payload["url"] = ctx.record.url
        payload["episode_id"] = ctx.episode_id
        payload["model"] = result.model
        atomic_write_json(ctx.paths.metadata_file, payload)
        ctx.logger.info("metadata_parsed", title=metadata.title, related_links=len(metadata.related_links))

        return StageResult(
            fields={
                "metadata_model": result.model,
                "metadata_prompt_version": prompts.version,
                "metadata_title": metadata.title,
                "metadata_summary": metadata.summary,
                "metadata_published_at": metadata.published_at,
                "metadata_related_links": list(metadata.related_links),
                "metadata_file_path": ctx.paths.metadata_file,
                "metadata_input_tokens": result.input_tokens,
                "metadata_output_tokens": result.output_tokens,
            }
        )
