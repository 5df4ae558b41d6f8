import logging
from typing import Any, Iterator

import httpx

from vmkite.clients.http import RetryPolicy, request_with_retry
from vmkite.metadata import decode
from vmkite.models import Job


logger = logging.getLogger(__name__)

ACTIVE_JOB_STATES = {"scheduled", "running"}


class BuildkiteClient:
    def __init__(
        self,
        org: str,
        api_token: str,
        retry: RetryPolicy,
        base_url: str = "https://api.buildkite.com/v2",
        *,
        page_size: int = 100,
        transport: httpx.BaseTransport | None = None,
    ):
        self.org = org
        self.base_url = base_url.rstrip("/")
        self.retry = retry
        self.page_size = page_size
        self.client = httpx.Client(
            headers={"Authorization": f"Bearer {api_token}"},
            timeout=10.0,
            transport=transport,
        )

    def list_pending_jobs(self) -> list[Job]:
        jobs: list[Job] = []
        for build in self._active_builds():
            jobs.extend(self._jobs_with_intent(build))
        return jobs

    def is_finished(self, job: Job) -> bool:
        url = (
            f"{self.base_url}/organizations/{self.org}/pipelines/"
            f"{job.pipeline}/builds/{job.build_number}"
        )
        logger.debug(
            "fetching build org=%s pipeline=%s number=%s",
            self.org,
            job.pipeline,
            job.build_number,
        )
        response = request_with_retry(self.client, "GET", url, self.retry)
        build = response.json()
        for build_job in _build_jobs(build):
            if build_job.get("id") != job.id:
                continue
            state = build_job.get("state")
            return isinstance(state, str) and state not in ACTIVE_JOB_STATES
        # The refreshed build may not list the job yet.
        return False

    def close(self) -> None:
        self.client.close()

    def _active_builds(self) -> Iterator[dict]:
        url: str | None = f"{self.base_url}/organizations/{self.org}/builds"
        params: list[tuple[str, Any]] | None = [
            ("state[]", state) for state in sorted(ACTIVE_JOB_STATES)
        ] + [("per_page", self.page_size)]
        while url:
            logger.debug("listing builds org=%s url=%s", self.org, url)
            response = request_with_retry(
                self.client, "GET", url, self.retry, params=params
            )
            payload = response.json()
            if isinstance(payload, list):
                for build in payload:
                    if isinstance(build, dict):
                        yield build
            # next links already carry the query string
            url = _next_page_url(response)
            params = None

    @staticmethod
    def _jobs_with_intent(build: dict) -> Iterator[Job]:
        pipeline = build.get("pipeline")
        slug = pipeline.get("slug") if isinstance(pipeline, dict) else None
        number = build.get("number")
        if not isinstance(slug, str) or not slug or number is None:
            return
        for build_job in _build_jobs(build):
            job_id = build_job.get("id")
            if not isinstance(job_id, str) or not job_id:
                continue
            intent = decode(build_job.get("agent_query_rules"))
            if not intent.is_complete:
                continue
            yield Job(
                id=job_id,
                build_number=str(number),
                pipeline=slug,
                intent=intent,
            )


def _build_jobs(build: Any) -> list[dict]:
    if not isinstance(build, dict):
        return []
    jobs = build.get("jobs")
    if not isinstance(jobs, list):
        return []
    return [job for job in jobs if isinstance(job, dict)]


def _next_page_url(response: Any) -> str | None:
    links = getattr(response, "links", None) or {}
    next_link = links.get("next")
    if isinstance(next_link, dict):
        url = next_link.get("url")
        if isinstance(url, str) and url:
            return url
    return None
