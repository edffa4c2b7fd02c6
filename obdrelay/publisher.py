from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Mapping, Protocol

import requests

from .config import RelayConfig


logger = logging.getLogger("obdrelay.publisher")

_INVALID_ENTITY_RUNS = re.compile(r"[^a-z0-9_]+")


class PublishError(RuntimeError):
    """Raised when the telemetry sink rejects or never receives a sample."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class Publisher(Protocol):
    def send(self, key: str, value: str, *, on_sent: Callable[[], None] | None = None) -> Any: ...

    def close(self) -> None: ...


def sanitize_key(key: str) -> str:
    return _INVALID_ENTITY_RUNS.sub("_", key.lower())


def entity_id(entity_prefix: str, key: str) -> str:
    return f"{entity_prefix}{sanitize_key(key)}"


def state_payload(key: str, value: str, *, source_name: str) -> Dict[str, Any]:
    return {
        "state": value,
        "attributes": {
            "friendly_name": key,
            "source": source_name,
        },
    }


def post_state(
    session: requests.Session,
    base_url: str,
    token: str,
    entity: str,
    payload: Mapping[str, Any],
    timeout_s: float = 10.0,
) -> requests.Response:
    return session.post(
        f"{base_url.rstrip('/')}/api/states/{entity}",
        headers={
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        },
        json=dict(payload),
        timeout=timeout_s,
    )


class HomeAssistantPublisher:
    """Push one state update per sample to the Home Assistant REST API.

    `send` is fire-and-forget: the request runs on a small worker pool and its
    outcome is only logged (plus `on_sent` on success). A slow or hanging
    sink therefore never stalls the relay loop. Failed samples are not
    re-buffered.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        entity_prefix: str,
        source_name: str = "obd-relay",
        timeout_s: float = 10.0,
        max_workers: int = 4,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.entity_prefix = entity_prefix
        self.source_name = source_name
        self.timeout_s = float(timeout_s)
        self._session = session or requests.Session()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)),
            thread_name_prefix="obdrelay-publish",
        )
        self._counter_lock = threading.Lock()
        self.sent_total = 0
        self.failed_total = 0

    @classmethod
    def from_config(
        cls,
        config: RelayConfig,
        *,
        session: requests.Session | None = None,
    ) -> HomeAssistantPublisher:
        return cls(
            base_url=config.base_url,
            token=config.token,
            entity_prefix=config.entity_prefix,
            source_name=config.source_name,
            timeout_s=config.request_timeout_s,
            session=session,
        )

    def reconfigure(self, config: RelayConfig) -> None:
        self.base_url = config.base_url.rstrip("/")
        self.token = config.token
        self.entity_prefix = config.entity_prefix
        self.source_name = config.source_name
        self.timeout_s = float(config.request_timeout_s)

    def publish(self, key: str, value: str) -> str:
        """Send one sample synchronously. Returns the entity id; raises PublishError."""

        entity = entity_id(self.entity_prefix, key)
        try:
            resp = post_state(
                self._session,
                self.base_url,
                self.token,
                entity,
                state_payload(key, value, source_name=self.source_name),
                timeout_s=self.timeout_s,
            )
        except requests.RequestException as exc:
            raise PublishError(f"network error updating {entity}: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise PublishError(
                f"HTTP {resp.status_code} updating {entity}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return entity

    def send(self, key: str, value: str, *, on_sent: Callable[[], None] | None = None) -> Future[str]:
        future = self._executor.submit(self.publish, key, value)

        def _done(f: Future[str]) -> None:
            exc = f.exception()
            if exc is None:
                with self._counter_lock:
                    self.sent_total += 1
                logger.debug("updated %s", f.result())
                if on_sent is not None:
                    try:
                        on_sent()
                    except Exception:
                        logger.exception("post-publish hook failed for %s", key)
                return

            with self._counter_lock:
                self.failed_total += 1
            if isinstance(exc, PublishError):
                logger.warning(
                    "publish_failed",
                    extra={"fields": {"key": key, "status_code": exc.status_code, "error": str(exc)}},
                )
            else:
                logger.error("unexpected publish failure for %s", key, exc_info=exc)

        future.add_done_callback(_done)
        return future

    def close(self, *, wait: bool = False) -> None:
        """Stop accepting work.

        The HTTP session is only closed once the workers have drained; with
        `wait=False` publishes already queued keep using it and it is left to
        the garbage collector.
        """

        self._executor.shutdown(wait=wait)
        if wait:
            self._session.close()
