from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from app.core.config import settings
from app.core.errors import AudioStoreError, AudioUploadError
from app.utils.file_store import new_audio_filename

logger = logging.getLogger(__name__)

# 本地音频对外访问前缀（main.py 中挂载为静态目录）
AUDIO_URL_PREFIX = "/audio/"


@dataclass(frozen=True)
class LocalAudio:
    path: str
    url: str


class AudioStore:
    """Two-phase audio persistence: local file first, remote storage later.

    The local copy makes a segment playable immediately; ``promote_to_remote``
    moves it to durable storage out of the critical path and deletes the local
    file only after the upload succeeded.
    """

    def __init__(
        self,
        audio_dir: str | None = None,
        upload_url: str | None = None,
        upload_token: str | None = None,
        http_client: httpx.Client | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        self.audio_dir = audio_dir or settings.audio_dir
        self.upload_url = upload_url if upload_url is not None else settings.uploadthing_url
        self.upload_token = upload_token if upload_token is not None else settings.uploadthing_token
        self._client = http_client
        self.timeout_seconds = timeout_seconds or settings.tts_request_timeout_seconds

    @property
    def promotion_enabled(self) -> bool:
        return bool(self.upload_url)

    # 写入本地音频目录，返回路径与可访问 URL
    def store_local(self, data: bytes) -> LocalAudio:
        if not data:
            raise AudioStoreError("refusing to store empty audio payload")
        filename = new_audio_filename()
        path = os.path.join(self.audio_dir, filename)
        try:
            os.makedirs(self.audio_dir, exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise AudioStoreError(f"error writing audio file {path}: {exc}") from exc
        logger.info("Saved audio file %s (%d bytes)", path, len(data))
        return LocalAudio(path=path, url=f"{AUDIO_URL_PREFIX}{filename}")

    # 将 /audio/<file> 映射回本地路径；远端 URL 返回 None
    def local_path_for(self, url: str | None) -> str | None:
        if not url or not url.startswith(AUDIO_URL_PREFIX):
            return None
        filename = os.path.basename(url[len(AUDIO_URL_PREFIX):])
        if not filename:
            return None
        return os.path.join(self.audio_dir, filename)

    def remove_local(self, path: str) -> bool:
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Failed to remove local audio %s: %s", path, exc)
            return False
        logger.info("Cleaned up local file %s", path)
        return True

    def upload(self, path: str) -> str:
        if not self.upload_url:
            raise AudioUploadError("remote storage is not configured")
        headers = {}
        if self.upload_token:
            headers["Authorization"] = f"Bearer {self.upload_token}"
        try:
            with open(path, "rb") as handle:
                files = {"file": (os.path.basename(path), handle, "audio/mpeg")}
                if self._client is not None:
                    response = self._client.post(self.upload_url, headers=headers, files=files)
                else:
                    with httpx.Client(timeout=self.timeout_seconds) as client:
                        response = client.post(self.upload_url, headers=headers, files=files)
        except OSError as exc:
            raise AudioUploadError(f"error opening file {path}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise AudioUploadError(f"error uploading to remote storage: {exc}") from exc

        if response.status_code != 200:
            raise AudioUploadError(
                f"remote storage error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            url = response.json().get("url")
        except (ValueError, AttributeError) as exc:
            raise AudioUploadError("error decoding remote storage response") from exc
        if not url:
            raise AudioUploadError("remote storage response has no url")
        return str(url)

    def promote_to_remote(
        self, path: str, persist: Optional[Callable[[str], object]] = None
    ) -> str:
        """Upload ``path``, record the remote URL via ``persist``, then delete it.

        On upload failure or if ``persist`` raises, the local file stays in
        place so the segment keeps a servable audio reference.
        """
        remote_url = self.upload(path)
        logger.info("Uploaded %s to %s", path, remote_url)
        if persist is not None:
            persist(remote_url)
        self.remove_local(path)
        return remote_url
