#!/usr/bin/env python3
from __future__ import annotations

"""Public object uploads through `s3cmd`."""

import mimetypes
import os
from dataclasses import dataclass
from typing import List, Optional

from .audio_mixer import run_command
from .config import PublishConfig
from .errors import ConfigurationError
from .logging_utils import Logger


@dataclass
class S3Uploader:
    config: PublishConfig
    logger: Logger

    def _base_command(self) -> List[str]:
        cmd = [self.config.s3cmd_bin]
        if self.config.s3cfg:
            if not os.path.isfile(self.config.s3cfg):
                raise ConfigurationError(f"s3cmd config file not found: {self.config.s3cfg}")
            cmd.extend(["-c", self.config.s3cfg])
        return cmd

    def remote_uri(self, key: str) -> str:
        return f"s3://{self.config.bucket}/{key.lstrip('/')}"

    def upload(self, local_path: str, key: str, *, mime_type: Optional[str] = None) -> str:
        """Upload `local_path` as a public object and return its public URL."""
        cmd = self._base_command()
        cmd.extend(["put", "--acl-public"])
        content_type = mime_type or mimetypes.guess_type(local_path)[0]
        if content_type:
            cmd.extend(["--mime-type", content_type])
        cmd.extend([local_path, self.remote_uri(key)])
        run_command(cmd, self.logger)
        url = self.config.public_url(key)
        self.logger.info("upload_ok", key=key, url=url)
        return url
