from __future__ import annotations

import os
from typing import Mapping, Protocol

import httpx
import structlog
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from release_pipeline.artifacts import ArtifactRef
from release_pipeline.core import ExecutorFailure, TransientError
from release_pipeline.definition import ActionNode, SourceConfig

from .base import ActionContext, ActionOutcome, Success

_RETRYABLE_STATUSES: set[int] = {408, 429, 500, 502, 503, 504}

log = structlog.get_logger(__name__)


class SecretsProvider(Protocol):
    def resolve(self, name: str) -> str: ...


class EnvSecretsProvider:
    """
    Resolve secrets from environment variables.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def resolve(self, name: str) -> str:
        value = self._environ.get(name)
        if not value:
            raise ExecutorFailure(f"Secret {name!r} is not available")
        return value


class SourceFetchError(ExecutorFailure):
    """Non-retryable status while fetching a revision archive."""

    def __init__(self, *, url: str, status_code: int, body_snippet: str | None) -> None:
        msg = f"HTTP {status_code} for GET {url}"
        if body_snippet:
            msg += f" (body: {body_snippet})"
        super().__init__(msg)
        self.url = url
        self.status_code = status_code


class SourceRetriesExceeded(TransientError):
    def __init__(self, *, url: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Source fetch retries exceeded for {url} (attempts={attempts}): {last_error}"
        )
        self.url = url
        self.attempts = attempts
        self.last_error = last_error


class RetryableHttpStatus(Exception):
    def __init__(self, *, url: str, status_code: int) -> None:
        super().__init__(f"HTTP {status_code} for GET {url}")
        self.url = url
        self.status_code = status_code


class DeterministicExponentialBackoff(wait_base):
    def __init__(self, *, base: float = 0.5, cap: float = 4.0) -> None:
        self._base = float(base)
        self._cap = float(cap)

    def __call__(self, retry_state) -> float:
        n = retry_state.attempt_number
        return min(self._cap, self._base * (2 ** (n - 1)))


def make_http_client(
    *,
    timeout: httpx.Timeout | None = None,
    user_agent: str = "release-pipeline/0.1",
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    t = timeout or httpx.Timeout(connect=5.0, read=60.0, write=30.0, pool=5.0)
    return httpx.Client(
        timeout=t,
        follow_redirects=True,
        headers={"User-Agent": user_agent},
        transport=transport,
    )


def _body_snippet(resp: httpx.Response, *, limit: int = 200) -> str | None:
    try:
        s = (resp.text or "")[:limit].strip()
    except (httpx.HTTPError, UnicodeDecodeError):
        return None
    return s or None


class HttpSourceExecutor:
    """
    Fetches an archive of one revision over HTTP and stores it as the
    action's single output.

    Only the transport is retried (GET is idempotent); the action itself is
    never replayed.
    """

    def __init__(
        self,
        *,
        client: httpx.Client | None = None,
        secrets: SecretsProvider | None = None,
        max_attempts: int = 4,
        backoff_base: float = 0.5,
        backoff_cap: float = 8.0,
    ) -> None:
        self._client = client or make_http_client()
        self._secrets = secrets or EnvSecretsProvider()
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap

    def archive_url(self, cfg: SourceConfig, revision: str) -> str:
        return cfg.archive_url.format(repository=cfg.repository, revision=revision)

    def _headers(self, cfg: SourceConfig) -> dict[str, str]:
        if cfg.token_secret is None:
            return {}
        return {"Authorization": f"Bearer {self._secrets.resolve(cfg.token_secret)}"}

    def _retrying(self, url: str) -> Retrying:
        def _before_sleep(retry_state) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            sleep = retry_state.next_action.sleep if retry_state.next_action else None
            log.warning(
                "source.retry",
                url=url,
                attempt=retry_state.attempt_number,
                sleep_s=sleep,
                error=repr(exc) if exc else None,
            )

        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=DeterministicExponentialBackoff(
                base=self.backoff_base, cap=self.backoff_cap
            ),
            retry=retry_if_exception_type(
                (httpx.TimeoutException, httpx.TransportError, RetryableHttpStatus)
            ),
            reraise=False,
            before_sleep=_before_sleep,
        )

    def fetch(self, cfg: SourceConfig, revision: str) -> bytes:
        url = self.archive_url(cfg, revision)
        headers = self._headers(cfg)

        def _do() -> bytes:
            resp = self._client.get(url, headers=headers)
            if resp.status_code == 200:
                return resp.content
            snippet = _body_snippet(resp)
            if resp.status_code in _RETRYABLE_STATUSES:
                raise RetryableHttpStatus(url=url, status_code=resp.status_code)
            raise SourceFetchError(
                url=url, status_code=resp.status_code, body_snippet=snippet
            )

        try:
            for attempt in self._retrying(url):
                with attempt:
                    return _do()
        except RetryError as re:
            last = re.last_attempt.exception()
            raise SourceRetriesExceeded(
                url=url,
                attempts=re.last_attempt.attempt_number,
                last_error=last or Exception("unknown"),
            ) from last
        raise RuntimeError("unreachable")

    def execute(
        self,
        action: ActionNode,
        inputs: Mapping[str, ArtifactRef],
        ctx: ActionContext,
    ) -> ActionOutcome:
        cfg = action.definition.configuration
        assert isinstance(cfg, SourceConfig)

        data = self.fetch(cfg, ctx.revision)
        ctx.logger.info(
            "Fetched source revision",
            repository=cfg.repository,
            branch=cfg.branch,
            revision=ctx.revision,
            bytes=len(data),
        )
        for artifact_id in ctx.declared_outputs:
            ctx.put_output(artifact_id, data)
        return Success()
