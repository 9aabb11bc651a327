"""
Model asset provisioning.

Recognition models are CTranslate2 weight snapshots on the Hugging Face hub.
They are downloaded once into the per-user cache and reused afterwards. A
snapshot only counts as present once its .complete marker has been written,
so an interrupted download is fetched again on the next run.
"""

import threading
import time
from concurrent.futures import Future, TimeoutError as FuturesTimeoutError
from pathlib import Path
from typing import Callable, Optional

from huggingface_hub import snapshot_download
from huggingface_hub.utils import tqdm as hf_tqdm

from . import compat
from .cancellation import CancellationToken
from .engines.factory import get_all_models, get_model_info
from .errors import AssetUnavailable, ConfigurationError
from .logger import get_logger

logger = get_logger('assets')

COMPLETE_MARKER = ".complete"
DEFAULT_DOWNLOAD_TIMEOUT = 600


def get_models_dir() -> Path:
    return compat.get_cache_dir() / "models"


class DownloadProgress:
    """Logs download progress, only when the whole percentage grows."""

    def __init__(self, label: str):
        self.label = label
        self.last_percent = -1

    def report(self, downloaded: float, total: float) -> bool:
        """Returns True if this call produced a log line."""
        if not total:
            return False
        percent = int(min(downloaded, total) * 100 // total)
        if percent <= self.last_percent:
            return False
        self.last_percent = percent
        logger.info(f"Downloading {self.label}: {percent}%")
        return True


def _progress_bar_class(progress: DownloadProgress):
    """tqdm class for snapshot_download that forwards updates to progress."""

    class _ReportingTqdm(hf_tqdm):
        def update(self, n=1):
            result = super().update(n)
            if self.total:
                progress.report(self.n, self.total)
            return result

    return _ReportingTqdm


def _hub_download(repo_id: str, local_dir: Path, progress: DownloadProgress) -> Path:
    return Path(snapshot_download(
        repo_id,
        local_dir=str(local_dir),
        tqdm_class=_progress_bar_class(progress),
    ))


class AssetProvisioner:
    """Resolves a model id to a local directory, downloading if needed."""

    def __init__(
        self,
        models_dir=None,
        timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT,
        downloader: Callable[[str, Path, DownloadProgress], Path] = _hub_download,
        poll_interval: float = 0.1,
    ):
        self.models_dir = Path(models_dir) if models_dir else get_models_dir()
        self.timeout_seconds = timeout_seconds
        self.downloader = downloader
        self.poll_interval = poll_interval

    def model_dir(self, model_id: str) -> Path:
        return self.models_dir / model_id

    def is_cached(self, model_id: str) -> bool:
        return (self.model_dir(model_id) / COMPLETE_MARKER).exists()

    def resolve(self, model_id: str, cancellation_token: Optional[CancellationToken] = None) -> Path:
        """
        Return the local directory holding model_id's weights.

        Args:
            model_id: A registered model id, or a path to a local model directory
            cancellation_token: Aborts the wait for a download in progress

        Raises:
            ConfigurationError: If model_id is neither registered nor a directory
            AssetUnavailable: If the download fails, times out or is cancelled
        """
        local = Path(model_id)
        if local.is_dir() and (local / "model.bin").exists():
            logger.debug(f"Using local model directory {local}")
            return local

        info = get_model_info(model_id)
        if info is None:
            known = ", ".join(m.id for m in get_all_models())
            raise ConfigurationError(f"Unknown model '{model_id}'. Available: {known}")

        target = self.model_dir(model_id)
        if self.is_cached(model_id):
            logger.info(f"Using cached model '{model_id}' from {target}")
            return target

        logger.info(f"Downloading model '{model_id}' ({info.repo_id}, ~{info.size_mb} MB)...")
        target.mkdir(parents=True, exist_ok=True)
        progress = DownloadProgress(f"model '{model_id}'")
        self._wait_for_download(model_id, info.repo_id, target, progress, cancellation_token)

        try:
            (target / COMPLETE_MARKER).write_text(time.strftime('%Y-%m-%dT%H:%M:%S'), encoding='utf-8')
        except OSError as e:
            raise AssetUnavailable(model_id, f"could not finalize cache at {target}: {e}") from e
        logger.info(f"Model '{model_id}' ready at {target}")
        return target

    def _wait_for_download(self, model_id, repo_id, target, progress, cancellation_token) -> None:
        """Run the download on a worker thread and wait at most timeout_seconds."""
        result: Future = Future()

        def worker():
            try:
                result.set_result(self.downloader(repo_id, target, progress))
            except BaseException as e:
                result.set_exception(e)

        # Daemon thread: a hung download must not keep the process alive
        threading.Thread(target=worker, name=f"download-{model_id}", daemon=True).start()

        deadline = time.monotonic() + self.timeout_seconds
        while True:
            if cancellation_token is not None and cancellation_token.is_cancelled:
                raise AssetUnavailable(model_id, "download cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AssetUnavailable(model_id, f"download timed out after {self.timeout_seconds:g}s")
            try:
                result.result(timeout=min(self.poll_interval, remaining))
                return
            except FuturesTimeoutError:
                if not result.done():
                    continue
                raise AssetUnavailable(model_id, "download failed: timed out") from result.exception()
            except Exception as e:
                raise AssetUnavailable(model_id, f"download failed: {e}") from e
