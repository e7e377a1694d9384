"""
Model acquisition over HTTP.

Downloads the files a transformer encoder needs from a Hugging Face style
endpoint into a local cache directory, streaming each file so progress can
be reported while the (large) weights arrive. The weights file is the
primary artifact; config and tokenizer files are auxiliary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import httpx

from .errors import ModelFetchError
from .schemas import ProgressEvent, ProgressStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

# (filename, required)
AUXILIARY_FILES: List[Tuple[str, bool]] = [
    ("config.json", True),
    ("tokenizer.json", False),
    ("tokenizer_config.json", False),
    ("special_tokens_map.json", False),
    ("vocab.txt", False),
]

# Tried in order; the first one the endpoint serves wins.
WEIGHT_FILES: List[str] = ["model.safetensors", "pytorch_model.bin"]


def model_cache_name(model_id: str) -> str:
    return model_id.replace("/", "--")


class ModelFetcher:
    """
    Stream model files from `endpoint` into `cache_dir/<model>/`.

    Files already present in the cache are not downloaded again. The client
    is created on demand unless one is supplied (tests pass one backed by
    `httpx.MockTransport`).
    """

    def __init__(
        self,
        cache_dir: str,
        endpoint: str = "https://huggingface.co",
        revision: str = "main",
        client: Optional[httpx.Client] = None,
        chunk_size: int = 1 << 20,
        timeout: float = 60.0,
    ) -> None:
        self._cache_dir = Path(cache_dir).expanduser()
        self._endpoint = endpoint.rstrip("/")
        self._revision = revision
        self._chunk_size = chunk_size
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def __enter__(self) -> "ModelFetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def model_dir(self, model_id: str) -> Path:
        return self._cache_dir / model_cache_name(model_id)

    def file_url(self, model_id: str, filename: str) -> str:
        return f"{self._endpoint}/{model_id}/resolve/{self._revision}/{filename}"

    def fetch(
        self,
        model_id: str,
        on_progress: Optional[ProgressCallback] = None,
        weight_files: Sequence[str] = WEIGHT_FILES,
    ) -> Path:
        """Download (or reuse) every file of `model_id` and return its directory."""
        target = self.model_dir(model_id)
        target.mkdir(parents=True, exist_ok=True)

        for filename, required in AUXILIARY_FILES:
            self._download(model_id, filename, target, required, on_progress)

        for filename in weight_files:
            if self._download(model_id, filename, target, False, on_progress):
                break
        else:
            raise ModelFetchError(
                f"No weights found for {model_id}; tried {', '.join(weight_files)}"
            )

        logger.info("Model %s available at %s", model_id, target)
        return target

    def _emit(
        self,
        on_progress: Optional[ProgressCallback],
        model_id: str,
        status: ProgressStatus,
        filename: str,
        percent: float,
    ) -> None:
        if on_progress is not None:
            on_progress(
                ProgressEvent(status=status, file=filename, percent=percent, model_id=model_id)
            )

    def _download(
        self,
        model_id: str,
        filename: str,
        target: Path,
        required: bool,
        on_progress: Optional[ProgressCallback],
    ) -> bool:
        dest = target / filename
        self._emit(on_progress, model_id, ProgressStatus.INITIATE, filename, 0.0)
        if dest.exists():
            logger.debug("Using cached %s for %s", filename, model_id)
            self._emit(on_progress, model_id, ProgressStatus.PROGRESS, filename, 100.0)
            return True

        url = self.file_url(model_id, filename)
        partial = dest.with_name(dest.name + ".part")
        try:
            with self._client.stream("GET", url) as response:
                if response.status_code == 404 and not required:
                    logger.debug("Optional file %s not served for %s", filename, model_id)
                    return False
                response.raise_for_status()

                total = int(response.headers.get("content-length") or 0)
                self._emit(on_progress, model_id, ProgressStatus.DOWNLOAD, filename, 0.0)
                loaded = 0
                last_step = 0
                with open(partial, "wb") as f:
                    for chunk in response.iter_bytes(self._chunk_size):
                        f.write(chunk)
                        loaded += len(chunk)
                        if total:
                            step = min(int(loaded * 100 / total), 100)
                            if step > last_step:
                                last_step = step
                                self._emit(
                                    on_progress, model_id, ProgressStatus.PROGRESS, filename, float(step)
                                )
        except httpx.HTTPError as exc:
            partial.unlink(missing_ok=True)
            raise ModelFetchError(f"Failed to download {url}: {exc}") from exc

        partial.replace(dest)
        if last_step < 100:
            self._emit(on_progress, model_id, ProgressStatus.PROGRESS, filename, 100.0)
        logger.info("Downloaded %s for %s (%d bytes)", filename, model_id, loaded)
        return True
