"""Download installation images from ranked mirrors."""

from __future__ import annotations

import http.client
import os
import re
import time
from pathlib import Path
from typing import Dict, List, Optional
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from winprov.constants import DEFAULT_USER_AGENTS
from winprov.exceptions import IntegrityError, MirrorRejectedError, TransientFetchError
from winprov.mirrors import MirrorRegistry
from winprov.models import AcquisitionPolicy, AcquisitionResult, MirrorEntry, VersionDescriptor
from winprov.utils import ensure_directory, file_digest, format_mib, log

# Client errors that still deserve another attempt on the same mirror.
_RETRYABLE_CLIENT_STATUS = {408, 425, 429}
_CONTENT_RANGE_RE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")
_CHUNK_SIZE = 1024 * 256  # 256 KiB


def partial_path(destination: Path) -> Path:
    return destination.with_name(destination.name + ".part")


def partial_source_path(destination: Path) -> Path:
    """Sidecar holding the URL the partial download was fetched from."""
    return destination.with_name(destination.name + ".part.src")


def _source_of(part: Path) -> Path:
    return part.with_name(part.name + ".src")


def _parse_length(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        log("DEBUG", f"Ignoring malformed Content-Length '{raw}'")
        return None
    return value if value >= 0 else None


class Acquirer:
    """Fetch the image for a descriptor, trying mirrors strictly in rank order."""

    def __init__(self, policy: AcquisitionPolicy, registry: MirrorRegistry) -> None:
        self.policy = policy
        self.registry = registry
        self._user_agents = policy.user_agents or DEFAULT_USER_AGENTS
        self._requests = 0

    def acquire(self, descriptor: VersionDescriptor, destination: Path) -> AcquisitionResult:
        candidates = self.registry.candidates(descriptor)
        ensure_directory(destination.parent)

        cached = self._reuse_cached(destination, candidates)
        if cached is not None:
            return cached

        if not candidates:
            reason = f"no mirrors are known for {descriptor.canonical_key} ({descriptor.language})"
            log("WARN", reason)
            return AcquisitionResult(
                local_path=None,
                size_bytes=0,
                checksum="",
                source_mirror=None,
                fell_back_to_manual=True,
                failure_reason=reason,
            )

        part = partial_path(destination)
        last_reason: Optional[str] = None
        last_mirror: Optional[MirrorEntry] = None
        retries = max(1, self.policy.retries)

        for mirror in candidates:
            last_mirror = mirror
            for attempt in range(1, retries + 1):
                log("INFO", f"Downloading {descriptor.display_name} from {mirror.label} (attempt {attempt}/{retries})")
                try:
                    checksum = self._attempt(mirror, part)
                except MirrorRejectedError as exc:
                    last_reason = str(exc)
                    log("WARN", f"{mirror.label}: {exc}; trying next mirror")
                    break
                except TransientFetchError as exc:
                    last_reason = str(exc)
                    log("WARN", f"{mirror.label}: {exc}")
                    if attempt < retries:
                        delay = self.backoff_delay(attempt)
                        log("INFO", f"Retrying in {delay:.0f}s...")
                        time.sleep(delay)
                    continue
                except KeyboardInterrupt:
                    if not mirror.supports_resume:
                        part.unlink(missing_ok=True)
                        _source_of(part).unlink(missing_ok=True)
                    raise

                os.replace(part, destination)
                _source_of(part).unlink(missing_ok=True)
                size = destination.stat().st_size
                log("SUCCESS", f"Downloaded {format_mib(size)} from {mirror.label}")
                return AcquisitionResult(
                    local_path=destination,
                    size_bytes=size,
                    checksum=checksum,
                    source_mirror=mirror,
                )
            else:
                log("WARN", f"{mirror.label}: giving up after {retries} attempts")

        log("ERROR", f"All {len(candidates)} mirror(s) failed for {descriptor.canonical_key}")
        return AcquisitionResult(
            local_path=None,
            size_bytes=0,
            checksum="",
            source_mirror=None,
            fell_back_to_manual=True,
            failure_reason=last_reason,
            last_mirror=last_mirror,
        )

    def backoff_delay(self, attempt: int) -> float:
        return min(self.policy.retry_delay * (2 ** (attempt - 1)), self.policy.retry_delay_max)

    def _next_user_agent(self) -> str:
        agent = self._user_agents[self._requests % len(self._user_agents)]
        self._requests += 1
        return agent

    def _headers(self, mirror: MirrorEntry, offset: int) -> Dict[str, str]:
        headers = {"User-Agent": self._next_user_agent()}
        headers.update(mirror.required_headers)
        if offset:
            headers["Range"] = f"bytes={offset}-"
        return headers

    def _reuse_cached(self, destination: Path, candidates: List[MirrorEntry]) -> Optional[AcquisitionResult]:
        if not destination.exists() or destination.stat().st_size == 0:
            return None
        size = destination.stat().st_size
        published = [m for m in candidates if m.size_bytes is not None or m.checksum]
        if not published:
            log("INFO", f"Using cached image: {destination}")
            return AcquisitionResult(
                local_path=destination,
                size_bytes=size,
                checksum=f"sha256:{file_digest(destination)}",
                source_mirror=None,
                from_cache=True,
            )
        for mirror in published:
            try:
                checksum = self._verify(destination, mirror, None, discard=False)
            except IntegrityError:
                continue
            log("INFO", f"Using cached image: {destination} (matches {mirror.label})")
            return AcquisitionResult(
                local_path=destination,
                size_bytes=size,
                checksum=checksum,
                source_mirror=mirror,
                from_cache=True,
            )
        log("WARN", f"Cached image {destination} matches no published checksum; downloading again")
        destination.unlink()
        return None

    def _attempt(self, mirror: MirrorEntry, part: Path) -> str:
        offset = part.stat().st_size if part.exists() else 0
        if offset and not mirror.supports_resume:
            log("DEBUG", f"{mirror.label} cannot resume; discarding {format_mib(offset)} partial download")
            part.unlink()
            offset = 0
        elif offset and self._partial_source(part) != mirror.url:
            # Bytes from another URL may belong to a different build.
            log("INFO", f"Partial download did not come from {mirror.label}; starting over")
            part.unlink()
            offset = 0

        request = Request(mirror.url, headers=self._headers(mirror, offset))
        try:
            response = urlopen(request, timeout=self.policy.timeout)
        except HTTPError as exc:
            if exc.code == 416 and offset:
                part.unlink(missing_ok=True)
                raise TransientFetchError(f"range request rejected at offset {offset}; restarting")
            if exc.code >= 500 or exc.code in _RETRYABLE_CLIENT_STATUS:
                raise TransientFetchError(f"HTTP {exc.code} {exc.reason}")
            raise MirrorRejectedError(mirror.url, exc.code, str(exc.reason))
        except (OSError, http.client.HTTPException) as exc:
            detail = getattr(exc, "reason", None) or f"{exc.__class__.__name__}: {exc}"
            raise TransientFetchError(f"connection failed: {detail}")

        with response:
            status = getattr(response, "status", 200)
            expected_total: Optional[int] = None
            if offset and status == 206:
                match = _CONTENT_RANGE_RE.match(response.headers.get("Content-Range", ""))
                if match and match.group(3) != "*":
                    expected_total = int(match.group(3))
                log("INFO", f"Resuming at {format_mib(offset)}")
            else:
                if offset:
                    log("WARN", f"{mirror.label} ignored the range request; restarting download")
                offset = 0
            length = _parse_length(response.headers.get("Content-Length"))
            if expected_total is None and length is not None:
                expected_total = offset + length
            if not offset:
                self._record_source(part, mirror)
            self._stream(response, part, offset, expected_total)

        return self._verify(part, mirror, expected_total)

    def _partial_source(self, part: Path) -> Optional[str]:
        try:
            return _source_of(part).read_text(encoding="utf-8").strip()
        except OSError:
            return None

    def _record_source(self, part: Path, mirror: MirrorEntry) -> None:
        _source_of(part).write_text(mirror.url + "\n", encoding="utf-8")

    def _stream(self, response, part: Path, offset: int, expected_total: Optional[int]) -> None:
        downloaded = offset
        start_time = time.time()
        last_pct = -1
        try:
            with open(part, "ab" if offset else "wb") as handle:
                while True:
                    chunk = response.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    handle.write(chunk)
                    downloaded += len(chunk)
                    if expected_total:
                        pct = int(downloaded * 100 / expected_total)
                        if pct != last_pct:
                            last_pct = pct
                            elapsed = time.time() - start_time
                            speed = (downloaded - offset) / elapsed if elapsed > 0 else 0
                            bar_len = 30
                            filled = int(bar_len * downloaded / expected_total)
                            bar = "#" * filled + "-" * (bar_len - filled)
                            print(
                                f"\r  [{bar}] {pct:3d}% {format_mib(downloaded)} / {format_mib(expected_total)} "
                                f"({speed / (1024 * 1024):.1f} MiB/s)",
                                end="",
                                flush=True,
                            )
        except (OSError, http.client.HTTPException) as exc:
            print(flush=True)
            raise TransientFetchError(f"transfer interrupted after {format_mib(downloaded)}: {exc}")
        print(flush=True)

    def _verify(
        self, path: Path, mirror: MirrorEntry, expected_total: Optional[int], discard: bool = True
    ) -> str:
        """Check length and checksum of ``path``; return ``"<algo>:<hex>"``."""
        size = path.stat().st_size
        if expected_total is not None and size < expected_total:
            # Short read: the partial file stays for a resumed attempt.
            raise TransientFetchError(f"transfer ended early ({size} of {expected_total} bytes)")
        for expected, label in ((expected_total, "server"), (mirror.size_bytes, "published")):
            if expected is not None and size != expected:
                if discard:
                    path.unlink(missing_ok=True)
                raise IntegrityError(f"size {size} does not match {label} size {expected}")

        if mirror.checksum:
            algorithm, _, expected_digest = mirror.checksum.partition(":")
            actual = file_digest(path, algorithm)
            if actual != expected_digest:
                if discard:
                    path.unlink(missing_ok=True)
                raise IntegrityError(f"{algorithm} mismatch: expected {expected_digest}, got {actual}")
            return f"{algorithm}:{actual}"
        return f"sha256:{file_digest(path)}"
