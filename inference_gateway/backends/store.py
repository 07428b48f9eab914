"""
Local model store: which GGUF files are on disk, and how to fetch them.
"""

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import httpx
from loguru import logger

from ..catalog import CatalogEntry, ModelCatalog
from ..config import Quantization
from ..errors import InsufficientStorage, RequestFailed, map_transport_error

DOWNLOAD_CHUNK_SIZE = 1024 * 1024

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class DownloadedModel:
    model_id: str
    quantization: Quantization
    path: Path
    size: int


class ModelStore:
    """
    Filesystem-backed download status for catalog models.

    Files live at ``<models_dir>/<name>-<QUANT>.gguf``. Downloads go to a
    ``.part`` file that is renamed only once complete, so ``is_downloaded``
    never reports a partial file.
    """

    def __init__(
        self,
        models_dir: Path,
        catalog: ModelCatalog,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
        check_storage: bool = True,
    ):
        self.models_dir = Path(models_dir)
        self.catalog = catalog
        self._transport = transport
        self._timeout = timeout
        self._check_storage_enabled = check_storage

    def model_path(self, entry: CatalogEntry, quantization: Quantization) -> Path:
        return self.models_dir / entry.filename(quantization)

    def is_downloaded(self, model_id: str, quantization: Quantization) -> bool:
        entry = self.catalog.lookup(model_id)
        if entry is None:
            return False
        return self.model_path(entry, quantization).is_file()

    def downloaded_models(self) -> List[DownloadedModel]:
        found: List[DownloadedModel] = []
        for entry in self.catalog.entries:
            for quantization in entry.quantizations:
                path = self.model_path(entry, quantization)
                if path.is_file():
                    found.append(DownloadedModel(entry.id, quantization, path, path.stat().st_size))
        return found

    async def download(
        self,
        model_id: str,
        quantization: Quantization,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Fetch a model file from its repository. Returns the final path."""
        entry = self.catalog.require(model_id)
        target = self.model_path(entry, quantization)
        if target.is_file():
            logger.info(f"Model already downloaded: {target.name}")
            return target

        self.models_dir.mkdir(parents=True, exist_ok=True)
        self._check_storage(quantization)

        url = entry.download_url(quantization)
        partial = target.with_suffix(target.suffix + ".part")
        logger.info(f"Starting download: {url}")

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if not response.is_success:
                        raise RequestFailed(response.status_code)

                    total = int(response.headers.get("content-length", 0))
                    received = 0
                    with open(partial, "wb") as f:
                        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                            f.write(chunk)
                            received += len(chunk)
                            if on_progress and total:
                                on_progress(received / total)
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise map_transport_error(e) from e
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        partial.replace(target)
        if on_progress:
            on_progress(1.0)
        logger.info(f"Download complete: {target.name}")
        return target

    def delete(self, model_id: str, quantization: Quantization) -> bool:
        entry = self.catalog.require(model_id)
        path = self.model_path(entry, quantization)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted model file: {path.name}")
        return True

    def _check_storage(self, quantization: Quantization):
        if not self._check_storage_enabled:
            return
        required = quantization.estimated_size
        available = shutil.disk_usage(self.models_dir).free
        if available < required:
            raise InsufficientStorage(required, available)
