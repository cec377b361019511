"""
Source resolution: turn a job's declared inputs into verified local files.

Remote inputs are streamed into the scratch area under job-scoped names and
registered on the job so they are deleted when the job finishes.
"""
import logging
import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import aiofiles
import httpx

from config import WorkerSettings, settings
from errors import SourceUnavailableError
from jobs import Job
from inputs import ConcatInput, JobSpec, TimedPlanInput, is_url

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def _extension_for(url: str) -> str:
    suffix = Path(urlparse(url).path).suffix.lower()
    suffix = re.sub(r"[^a-z0-9.]", "", suffix)
    return suffix if len(suffix) > 1 else ".mp4"


class SourceResolver:
    """Materializes job inputs as local paths."""

    def __init__(
        self,
        worker_settings: Optional[WorkerSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = worker_settings or settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.settings.download_timeout,
            transport=self._transport,
        )

    async def resolve(self, job: Job) -> list[Path]:
        """Return the job's inputs as ordered local paths."""
        spec = job.spec

        if isinstance(spec, ConcatInput):
            job.append_log(f"Resolving {len(spec.source_urls)} sources...")
            paths = []
            async with self._client() as client:
                for i, url in enumerate(spec.source_urls):
                    dest = self.settings.temp_dir / f"{job.job_id}_src_{i}{_extension_for(url)}"
                    try:
                        await self._download(client, job, url, dest)
                    except SourceUnavailableError as e:
                        raise SourceUnavailableError(f"Failed to download source {i} ({url}): {e.message}")
                    job.append_log(f"Source {i} ready: {dest}")
                    paths.append(dest)
            return paths

        if isinstance(spec, TimedPlanInput):
            return await self._resolve_plan(job, spec)

        async with self._client() as client:
            return [await self._resolve_job_source(client, job, spec)]

    async def _resolve_plan(self, job: Job, spec: TimedPlanInput) -> list[Path]:
        """One local path per unique plan asset, in ``spec.asset_refs()`` order."""
        refs = spec.asset_refs()
        job.append_log(f"Resolving {len(refs)} plan asset(s)...")
        paths = []
        async with self._client() as client:
            for i, (url, used_by) in enumerate(refs):
                if url is None:
                    paths.append(await self._resolve_job_source(client, job, spec))
                    continue
                dest = self.settings.temp_dir / f"{job.job_id}_asset_{i}{_extension_for(url)}"
                try:
                    await self._download(client, job, url, dest)
                except SourceUnavailableError as e:
                    raise SourceUnavailableError(f"Failed to download asset for {used_by} ({url}): {e.message}")
                job.append_log(f"Asset {i} ready ({used_by}): {dest}")
                paths.append(dest)
        return paths

    async def _resolve_job_source(self, client: httpx.AsyncClient, job: Job, spec: JobSpec) -> Path:
        if spec.source_path and not is_url(spec.source_path):
            local = Path(spec.source_path)
            if local.is_file():
                if local.stat().st_size == 0:
                    raise SourceUnavailableError(f"Source file is empty (0 bytes): {local}")
                job.append_log(f"Using local source: {local}")
                return local
            if not spec.source_url:
                raise SourceUnavailableError(f"Source file not found: {local}")
            job.append_log(f"Local source {local} missing, falling back to remote URL")

        if spec.source_url:
            url = spec.source_url
            job.append_log(f"Resolving remote source: {url}")
            dest = self.settings.temp_dir / f"{job.job_id}_source{_extension_for(url)}"
            try:
                await self._download(client, job, url, dest)
            except SourceUnavailableError as e:
                raise SourceUnavailableError(f"Failed to download source file ({url}): {e.message}")
            job.append_log(f"Downloaded to: {dest}")
            return dest

        raise SourceUnavailableError("No sourcePath or valid remote URL provided")

    async def _download(self, client: httpx.AsyncClient, job: Job, url: str, dest: Path) -> None:
        """Stream ``url`` into ``dest``; the file is owned by ``job`` from the first byte."""
        logger.info(f"[{job.job_id}] Downloading {url} to {dest}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        job.temp_files.append(dest)
        limit = self.settings.max_download_bytes
        written = 0
        try:
            async with client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise SourceUnavailableError(
                        f"HTTP {response.status_code} {response.reason_phrase}".strip()
                    )
                async with aiofiles.open(dest, "wb") as f:
                    async for chunk in response.aiter_bytes(CHUNK_SIZE):
                        written += len(chunk)
                        if written > limit:
                            raise SourceUnavailableError(f"file exceeds {limit} bytes")
                        await f.write(chunk)
        except httpx.HTTPError as e:
            raise SourceUnavailableError(f"{type(e).__name__}: {e}" if str(e) else type(e).__name__)
        except OSError as e:
            raise SourceUnavailableError(f"could not write {dest.name}: {e}")

        if written == 0:
            raise SourceUnavailableError("downloaded file is empty (0 bytes)")
        logger.info(f"[{job.job_id}] Download complete: {dest} ({written} bytes)")
