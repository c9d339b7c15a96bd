"""Persistent cache for interpolation model weights.

Each entry is keyed by model id and version and consists of two files in the
cache directory (default ``~/.loopia/models/``):

    rife-4.6.onnx    raw model bytes
    rife-4.6.json    sidecar {model_id, version, size_bytes, sha256, timestamp}

An entry is only visible once both files exist and the weights match the
size recorded in the sidecar. Downloads land in a ``.download`` temp file and
are moved into place atomically, so an interrupted download never leaves a
half-written entry behind.
"""

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from http.client import HTTPException
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from tqdm import tqdm

from ..exceptions import ModelLoadError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

USER_AGENT = "loopia-model-store/1.0"


@dataclass
class ModelEntry:
    """Sidecar metadata of a cached model."""
    model_id: str
    version: str
    size_bytes: int
    sha256: str
    timestamp: float


class ModelStore:
    """Downloads model weights once and serves them from disk afterwards.

    Thread-safe: concurrent fetches of the same entry are serialized, and the
    second caller finds the entry written by the first.

    Example:
        >>> store = ModelStore(Path("~/.loopia/models").expanduser())
        >>> path = store.fetch("rife", "4.6", DEFAULT_MODEL_URL)
    """

    CHUNK_SIZE = 64 * 1024

    def __init__(
        self,
        model_dir: Path,
        retries: int = 3,
        retry_delay: float = 2.0,
    ) -> None:
        self.model_dir = Path(model_dir)
        self.retries = retries
        self.retry_delay = retry_delay
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @staticmethod
    def entry_key(model_id: str, version: str) -> str:
        return f"{model_id}-{version}"

    def weights_path(self, model_id: str, version: str) -> Path:
        return self.model_dir / f"{self.entry_key(model_id, version)}.onnx"

    def sidecar_path(self, model_id: str, version: str) -> Path:
        return self.model_dir / f"{self.entry_key(model_id, version)}.json"

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def entry_info(self, model_id: str, version: str) -> Optional[ModelEntry]:
        """Sidecar metadata of a cached entry, or None when absent or corrupt."""
        sidecar = self.sidecar_path(model_id, version)
        if not sidecar.exists():
            return None
        try:
            return ModelEntry(**json.loads(sidecar.read_text()))
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable model sidecar {sidecar}: {e}")
            return None

    def lookup(self, model_id: str, version: str) -> Optional[Path]:
        """Path of the cached weights, or None on a cache miss."""
        entry = self.entry_info(model_id, version)
        if entry is None:
            return None
        weights = self.weights_path(model_id, version)
        try:
            size = weights.stat().st_size
        except OSError:
            return None
        if size != entry.size_bytes:
            logger.warning(
                f"Cached model {weights.name} has {size} bytes, expected {entry.size_bytes}; ignoring"
            )
            return None
        return weights

    def list_entries(self) -> List[ModelEntry]:
        entries = []
        for sidecar in sorted(self.model_dir.glob("*.json")):
            try:
                entries.append(ModelEntry(**json.loads(sidecar.read_text())))
            except (OSError, ValueError, TypeError):
                continue
        return entries

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch(
        self,
        model_id: str,
        version: str,
        url: str,
        sha256: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Path:
        """Return cached weights, downloading them on a miss.

        Args:
            model_id: Model identifier
            version: Model version
            url: HTTP(S) location of the ONNX weights
            sha256: Expected checksum; verified when given
            progress_callback: Receives download progress 0-100

        Returns:
            Path to the cached weights

        Raises:
            ModelLoadError: If the download fails after all retries or the
                checksum does not match
        """
        with self._lock:
            cached = self.lookup(model_id, version)
            if cached is not None:
                logger.info(f"Model {model_id} {version} served from cache")
                if progress_callback:
                    progress_callback(100.0)
                return cached

            self.model_dir.mkdir(parents=True, exist_ok=True)
            temp_path = self.model_dir / f"{self.entry_key(model_id, version)}.onnx.download"

            for attempt in range(self.retries):
                try:
                    logger.info(
                        f"Downloading {model_id} {version} (attempt {attempt + 1}/{self.retries})"
                    )
                    digest, size = self._download_file(url, temp_path, progress_callback)
                    break
                except ValueError as e:
                    # Malformed URL or response headers; retrying cannot help
                    self._discard(temp_path)
                    raise ModelLoadError(f"Cannot download model from {url!r}: {e}", model_id=model_id, cause=e)
                except (URLError, HTTPError, HTTPException, OSError) as e:
                    logger.warning(f"Download attempt {attempt + 1} failed: {e}")
                    if attempt < self.retries - 1:
                        time.sleep(self.retry_delay * (attempt + 1))
                    else:
                        self._discard(temp_path)
                        raise ModelLoadError(
                            f"Failed to download model after {self.retries} attempts",
                            model_id=model_id,
                            cause=e,
                        )

            if sha256 and digest.lower() != sha256.lower():
                self._discard(temp_path)
                raise ModelLoadError(
                    f"Checksum mismatch for downloaded model (got {digest})",
                    model_id=model_id,
                )

            return self._commit(model_id, version, temp_path, digest, size)

    def _download_file(
        self,
        url: str,
        dest: Path,
        progress_callback: Optional[ProgressCallback],
    ) -> Tuple[str, int]:
        """Stream url into dest. Returns (sha256 hex digest, byte count)."""
        request = Request(url, headers={"User-Agent": USER_AGENT})
        hasher = hashlib.sha256()
        downloaded = 0

        with urlopen(request) as response:
            total = int(response.headers.get("Content-Length") or 0)
            with open(dest, "wb") as f, tqdm(
                total=total or None,
                unit="B",
                unit_scale=True,
                unit_divisor=1024,
                desc=dest.name.split(".")[0],
                disable=progress_callback is not None,
                leave=False,
            ) as pbar:
                while True:
                    chunk = response.read(self.CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
                    hasher.update(chunk)
                    downloaded += len(chunk)
                    pbar.update(len(chunk))
                    if progress_callback and total > 0:
                        progress_callback(min(downloaded / total * 100.0, 100.0))

        if total and downloaded != total:
            raise OSError(f"Incomplete download: {downloaded} of {total} bytes")
        if downloaded == 0:
            raise OSError("Empty response body")
        if progress_callback:
            progress_callback(100.0)
        return hasher.hexdigest(), downloaded

    def _commit(self, model_id: str, version: str, temp_path: Path, digest: str, size: int) -> Path:
        weights = self.weights_path(model_id, version)
        os.replace(temp_path, weights)

        entry = ModelEntry(
            model_id=model_id,
            version=version,
            size_bytes=size,
            sha256=digest,
            timestamp=time.time(),
        )
        sidecar = self.sidecar_path(model_id, version)
        sidecar_tmp = sidecar.with_suffix(".json.download")
        sidecar_tmp.write_text(json.dumps(asdict(entry), indent=2))
        os.replace(sidecar_tmp, sidecar)

        logger.info(f"Cached model {model_id} {version} ({size / 1e6:.1f} MB) at {weights}")
        return weights

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove {path.name}: {e}")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear(self, model_id: Optional[str] = None) -> int:
        """Remove cached entries (all, or those of one model id).

        Returns:
            Number of files removed
        """
        if not self.model_dir.exists():
            return 0

        count = 0
        with self._lock:
            for path in self.model_dir.iterdir():
                if not path.is_file():
                    continue
                if model_id and not path.name.startswith(f"{model_id}-"):
                    continue
                if not path.name.endswith((".onnx", ".json", ".download")):
                    continue
                try:
                    path.unlink()
                    count += 1
                except OSError as e:
                    logger.warning(f"Failed to remove {path.name}: {e}")

        logger.info(f"Cleared {count} model cache files")
        return count

    def storage_usage(self) -> Dict[str, float]:
        """Total size of cached weights in MB, per entry key."""
        usage: Dict[str, float] = {}
        for entry in self.list_entries():
            usage[self.entry_key(entry.model_id, entry.version)] = round(entry.size_bytes / 1e6, 2)
        return usage
