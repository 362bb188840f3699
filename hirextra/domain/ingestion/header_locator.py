"""
Find the header row of an uploaded file.

Exported CSVs often start with banner or metadata lines. The locator scans a
bounded number of lines for one that mentions the headers the mapping expects;
the preview only reads the first few kilobytes of the object.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from contextlib import closing
from typing import Any, Callable, Iterable, List, Mapping, Optional

from hirextra.core.config import settings
from hirextra.domain.ingestion.errors import HeaderDiscoveryTimeout
from hirextra.domain.ingestion.line_parser import iter_text_lines, parse_line
from hirextra.integrations.storage import BlobStore

logger = logging.getLogger(__name__)


def call_with_timeout(func: Callable[..., Any], timeout_seconds: float, *args, **kwargs) -> Any:
    """
    Run ``func`` on a helper thread and wait at most ``timeout_seconds``.

    Raises:
        HeaderDiscoveryTimeout: If the call did not finish in time. The helper
            thread is abandoned, not interrupted.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        future.cancel()
        raise HeaderDiscoveryTimeout(
            f"Reading headers exceeded {timeout_seconds:g} second timeout"
        ) from exc
    finally:
        executor.shutdown(wait=False)


def expected_headers_from_mapping(mapping: Optional[Mapping[str, Any]]) -> List[str]:
    """Return the non-empty source headers a field mapping refers to."""
    headers = []
    for header in (mapping or {}).values():
        if header is None:
            continue
        text = str(header).strip()
        if text and text not in headers:
            headers.append(text)
    return headers


def find_header_index(lines: Iterable[str], expected_headers: List[str], scan_lines: int) -> Optional[int]:
    """Return the index of the first line mentioning an expected header, or None."""
    for index, line in enumerate(lines):
        if index >= scan_lines:
            break
        # A quoted header contains the plain one.
        if any(header in line for header in expected_headers):
            return index
    return None


def locate_header_row(
    store: BlobStore,
    key: str,
    expected_headers: Iterable[str],
    scan_lines: Optional[int] = None,
) -> int:
    """
    Return the 0-based line index of the header row of ``key``.

    The first line within ``scan_lines`` containing any expected header wins.
    Falls back to line 0 with a warning when nothing matches.
    """
    expected = [header for header in expected_headers if header]
    if not expected:
        return 0

    limit = scan_lines or settings.header_scan_lines
    with closing(store.get(key)) as chunks:
        index = find_header_index(iter_text_lines(chunks), expected, limit)

    if index is None:
        logger.warning(
            f"No expected header found in the first {limit} lines of {key}; assuming line 0"
        )
        return 0

    if index > 0:
        logger.info(f"Header row for {key} found at line {index}")
    return index


def _read_first_line(store: BlobStore, key: str, preview_bytes: int) -> List[str]:
    with closing(store.get_range(key, 0, preview_bytes - 1)) as chunks:
        for line in iter_text_lines(chunks):
            if line.strip():
                return parse_line(line, header=True)
    return []


def preview_headers(
    store: BlobStore,
    key: str,
    timeout_seconds: Optional[float] = None,
    preview_bytes: Optional[int] = None,
) -> List[str]:
    """
    Return the parsed first non-empty line of ``key``.

    Only the first ``preview_bytes`` of the object are fetched.

    Raises:
        HeaderDiscoveryTimeout: If the read exceeds ``timeout_seconds``.
        StorageNotFoundError: If the object does not exist.
    """
    timeout = timeout_seconds if timeout_seconds is not None else settings.header_read_timeout_seconds
    size = preview_bytes or settings.header_preview_bytes
    headers = call_with_timeout(_read_first_line, timeout, store, key, size)
    logger.info(f"Previewed {len(headers)} headers for {key}")
    return headers
