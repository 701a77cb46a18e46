"""Archive downloads for the toolchain and kernel stages.

Downloads land in ``<dest>.tmp`` and are renamed into place only after the
transfer completes, so an interrupted download is never mistaken for a
finished one.
"""

import logging
import os
import time
from pathlib import Path
from typing import Optional

import requests

from .config import settings
from .exceptions import DownloadError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def download_file(
    url: str,
    dest: Path,
    attempts: Optional[int] = None,
    connect_timeout: Optional[float] = None,
    read_timeout: Optional[float] = None,
    session: Optional[requests.Session] = None,
    backoff_seconds: float = 2.0,
) -> Path:
    """
    Download ``url`` to ``dest``, following redirects.

    Args:
        url: Source URL
        dest: Final path of the downloaded file
        attempts: Number of tries before giving up
        connect_timeout: Seconds to wait for the connection
        read_timeout: Seconds a stalled transfer may sit idle
        session: Optional requests session (for connection reuse or testing)
        backoff_seconds: Base delay between tries, multiplied by the try number

    Returns:
        ``dest``

    Raises:
        DownloadError: If every attempt fails
    """
    attempts = attempts or settings.download_attempts
    timeout = (
        connect_timeout or settings.download_connect_timeout,
        read_timeout or settings.download_read_timeout,
    )
    http = session or requests.Session()
    tmp = dest.with_name(dest.name + ".tmp")
    dest.parent.mkdir(parents=True, exist_ok=True)

    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            with http.get(url, stream=True, timeout=timeout, allow_redirects=True) as response:
                response.raise_for_status()
                with open(tmp, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            os.replace(tmp, dest)
            return dest
        except (requests.RequestException, OSError) as e:
            last_error = e
            logger.warning(f"Download of {url} failed (attempt {attempt}/{attempts}): {e}")
            if attempt < attempts:
                time.sleep(backoff_seconds * attempt)

    if tmp.exists():
        tmp.unlink()
    raise DownloadError(f"Failed to download {url}: {last_error}")
