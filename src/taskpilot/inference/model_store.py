"""Local model acquisition — cache lookup and verified GGUF download."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import httpx
from huggingface_hub import hf_hub_url

from taskpilot.errors import AIError, ErrorKind

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

_CHUNK_SIZE = 1024 * 1024


def _download_failed(message: str) -> AIError:
    return AIError(ErrorKind.MODEL_DOWNLOAD_FAILED, message)


class ModelStore:
    """Find a GGUF model in the cache directory, downloading the default one if absent.

    Downloads stream into ``<file>.part`` and are only renamed into place once
    the received size matches ``Content-Length``; a failed download never
    leaves a file that :meth:`find_cached` would pick up.
    """

    def __init__(
        self,
        models_dir: Path,
        hf_repo: str,
        hf_file: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.models_dir = models_dir
        self.hf_repo = hf_repo
        self.hf_file = hf_file
        self._transport = transport

    @property
    def target_path(self) -> Path:
        return self.models_dir / self.hf_file

    def find_cached(self) -> Path | None:
        """Return the default model if cached, else any other ``*.gguf`` in the cache."""
        if self.target_path.is_file() and self.target_path.stat().st_size > 0:
            return self.target_path
        if not self.models_dir.is_dir():
            return None
        for gguf in sorted(self.models_dir.glob("*.gguf")):
            if gguf.stat().st_size > 0:
                return gguf
        return None

    async def ensure_model(self, progress: ProgressCallback | None = None) -> Path:
        cached = self.find_cached()
        if cached is not None:
            logger.info("Using cached model: %s", cached)
            return cached
        return await self.download(progress)

    async def download(self, progress: ProgressCallback | None = None) -> Path:
        """Download the default model, reporting percentage progress (0-100)."""
        url = hf_hub_url(repo_id=self.hf_repo, filename=self.hf_file)
        try:
            self.models_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise _download_failed(f"Cannot create models directory {self.models_dir}: {e}") from e

        part_path = self.target_path.with_name(self.hf_file + ".part")
        logger.info("Downloading %s/%s to %s", self.hf_repo, self.hf_file, self.target_path)
        try:
            received, expected = await self._stream_to(url, part_path, progress)
            if received == 0:
                raise _download_failed(f"Download of {self.hf_file} returned no data")
            if expected and received != expected:
                raise _download_failed(
                    f"Incomplete download of {self.hf_file}: {received} of {expected} bytes"
                )
            part_path.replace(self.target_path)
        except httpx.HTTPError as e:
            part_path.unlink(missing_ok=True)
            raise _download_failed(f"Download of {self.hf_file} failed: {e}") from e
        except OSError as e:
            part_path.unlink(missing_ok=True)
            raise _download_failed(f"Cannot write {part_path}: {e}") from e
        except AIError:
            part_path.unlink(missing_ok=True)
            raise

        if progress is not None:
            progress(100.0)
        logger.info("Model downloaded: %s (%d bytes)", self.target_path, received)
        return self.target_path

    async def _stream_to(
        self, url: str, path: Path, progress: ProgressCallback | None,
    ) -> tuple[int, int]:
        timeout = httpx.Timeout(connect=30.0, read=120.0, write=30.0, pool=30.0)
        async with httpx.AsyncClient(
            transport=self._transport, timeout=timeout, follow_redirects=True,
        ) as client:
            async with client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise _download_failed(
                        f"Model server returned HTTP {response.status_code} for {url}"
                    )
                expected = int(response.headers.get("content-length") or 0)
                received = 0
                last_pct = -1
                with open(path, "wb") as f:
                    async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                        f.write(chunk)
                        received += len(chunk)
                        if progress is not None and expected:
                            pct = int(received * 100 / expected)
                            if pct != last_pct and pct < 100:
                                last_pct = pct
                                progress(float(pct))
        return received, expected
