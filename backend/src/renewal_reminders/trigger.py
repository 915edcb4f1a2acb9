from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from typing import Protocol

from .scheduler import ReminderScheduler, RunOutcome

logger = logging.getLogger(__name__)


class TriggerNotConfiguredError(RuntimeError):
    """Raised when a caller explicitly asks for a run but no trigger substrate is configured."""


class TriggerRequestError(Exception):
    """Raised when the workflow service rejects or cannot receive a trigger request."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class WorkflowTriggerClient(Protocol):
    def trigger(self, subscription_id: str) -> str: ...


class LocalWorkflowTriggerClient:
    """Runs workflows in-process: the run is persisted and handed to the durable timer."""

    def __init__(self, scheduler: ReminderScheduler) -> None:
        self._scheduler = scheduler

    def trigger(self, subscription_id: str) -> str:
        return self._scheduler.enqueue(subscription_id)


class HttpWorkflowTriggerClient:
    """Starts runs on an external durable-workflow service (QStash-style trigger API).

    The service calls back ``<public base url><api prefix>/subscriptions/<id>/reminder-jobs/run``
    every time the run needs to advance.
    """

    def __init__(
        self,
        *,
        service_url: str,
        token: str,
        public_base_url: str,
        api_prefix: str = "/api/v1",
        timeout_seconds: int = 30,
    ) -> None:
        stripped_service = service_url.strip().rstrip("/")
        stripped_token = token.strip()
        stripped_public = public_base_url.strip().rstrip("/")
        if not stripped_service:
            raise ValueError("service_url must not be empty")
        if not stripped_token:
            raise ValueError("token must not be empty")
        if not stripped_public:
            raise ValueError("public_base_url must not be empty")
        self._service_url = stripped_service
        self._token = stripped_token
        self._public_base_url = stripped_public
        self._api_prefix = "/" + api_prefix.strip("/") if api_prefix.strip("/") else ""
        self._timeout_seconds = timeout_seconds

    def run_url(self, subscription_id: str) -> str:
        quoted = urllib.parse.quote(subscription_id, safe="")
        return f"{self._public_base_url}{self._api_prefix}/subscriptions/{quoted}/reminder-jobs/run"

    def trigger(self, subscription_id: str) -> str:
        url = f"{self._service_url}/v2/trigger/{self.run_url(subscription_id)}"
        data = json.dumps({"subscription_id": subscription_id}).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
                "Upstash-Retries": "0",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise TriggerRequestError(f"http_{exc.code}", f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise TriggerRequestError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise TriggerRequestError("timeout", f"Request timed out: {exc}") from exc
        except ValueError as exc:
            raise TriggerRequestError("invalid_response", "Workflow service returned invalid JSON") from exc

        run_id = payload.get("workflowRunId") if isinstance(payload, dict) else None
        if not isinstance(run_id, str) or not run_id:
            raise TriggerRequestError("invalid_response", "Workflow service response has no workflowRunId")
        return run_id


class TriggerGateway:
    def __init__(self, *, client: WorkflowTriggerClient | None, scheduler: ReminderScheduler) -> None:
        self._client = client
        self._scheduler = scheduler

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    def schedule_run(self, subscription_id: str) -> str | None:
        """Best-effort start of a reminder run.

        Returns ``None`` when the trigger substrate is not configured or the
        trigger fails; callers such as subscription creation must not fail
        because of the reminder subsystem.
        """
        if self._client is None:
            logger.info("reminder workflow not configured; subscription %s has no scheduled run", subscription_id)
            return None
        try:
            return self._client.trigger(subscription_id)
        except TriggerRequestError as exc:
            logger.warning("workflow trigger failed for %s (%s): %s", subscription_id, exc.error_code, exc.message)
        except Exception:
            logger.exception("workflow trigger failed for %s", subscription_id)
        return None

    def request_run(self, subscription_id: str) -> str:
        """Start a run on explicit request; errors propagate to the caller."""
        if self._client is None:
            raise TriggerNotConfiguredError("Reminder workflow is not configured")
        return self._client.trigger(subscription_id)

    def execute(self, subscription_id: str) -> RunOutcome:
        return self._scheduler.run(subscription_id)
