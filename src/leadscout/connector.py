from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import CredentialInvalidError, LeadScoutError
from .lifecycle import get_run, mark_failed, mark_started
from .models import RUN_PENDING
from .storage import init_db
from .utils import log_event

logger = logging.getLogger("leadscout.connector")

REQUIRED_CREDENTIAL_FIELDS: dict[str, tuple[str, ...]] = {
    "directory": ("bearer_token",),
    "map_listings": ("api_key",),
    "professional_network": (),
    "other": (),
}


@dataclass(frozen=True)
class DispatchRequest:
    run_id: str
    job_id: str
    source_platform: str
    params: dict[str, Any]
    credentials: dict[str, str] = field(default_factory=dict, repr=False)


class SourceConnector(ABC):
    """Boundary to whatever actually scrapes a platform.

    ``dispatch`` hands a pending run over and returns without waiting for the
    scrape; the connector reports progress later through the run lifecycle
    callbacks. ``probe`` checks a platform's credentials and raises
    ``CredentialInvalidError`` when they are rejected.
    """

    @abstractmethod
    def dispatch(self, request: DispatchRequest) -> None:
        raise NotImplementedError

    @abstractmethod
    def probe(self, platform: str, credentials: dict[str, str]) -> None:
        raise NotImplementedError


class NullConnector(SourceConnector):
    """Connector for deployments where an external orchestrator polls pending runs."""

    def dispatch(self, request: DispatchRequest) -> None:
        log_event(
            logger,
            logging.INFO,
            "dispatch_queued",
            run_id=request.run_id,
            job_id=request.job_id,
            source_platform=request.source_platform,
            params=",".join(sorted(request.params)),
        )

    def probe(self, platform: str, credentials: dict[str, str]) -> None:
        required = REQUIRED_CREDENTIAL_FIELDS.get(platform)
        if required is None:
            raise CredentialInvalidError(f"unknown source_platform: {platform}")
        missing = [name for name in required if not credentials.get(name)]
        if missing:
            raise CredentialInvalidError("missing credential field(s): " + ", ".join(missing))


class Dispatcher:
    """Runs connector dispatches on a thread pool.

    Each dispatch gets its own database connection from ``conn_factory``. A
    dispatch that raises leaves the run failed with ``dispatch_failed: ...``
    instead of pending forever.
    """

    def __init__(
        self,
        connector: SourceConnector,
        conn_factory: Callable[[], Any] | None = None,
        max_workers: int = 4,
    ) -> None:
        self.connector = connector
        self.max_workers = max(1, max_workers)
        self._conn_factory = conn_factory or init_db
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="leadscout-dispatch"
        )

    def submit(self, request: DispatchRequest) -> Future:
        return self._executor.submit(self._dispatch, request)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _dispatch(self, request: DispatchRequest) -> None:
        try:
            self.connector.dispatch(request)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "dispatch_failed",
                run_id=request.run_id,
                job_id=request.job_id,
                error=str(exc),
            )
            self.record_failure(request.run_id, f"dispatch_failed: {exc}")

    def record_failure(self, run_id: str, message: str) -> None:
        conn = self._conn_factory()
        try:
            run = get_run(conn, run_id)
            if run is None or run.is_terminal:
                return
            if run.status == RUN_PENDING:
                mark_started(conn, run_id)
            mark_failed(conn, run_id, message)
        except LeadScoutError as exc:
            # The run moved on (cancelled, or reported by the connector) meanwhile.
            log_event(
                logger,
                logging.WARNING,
                "dispatch_failure_not_recorded",
                run_id=run_id,
                error=exc.kind,
            )
        finally:
            conn.close()
