"""HTTP client for the kie.ai job API.

kie.ai fronts every generation provider behind one job interface:
  POST /api/v1/jobs/createTask   - submit a job, returns a task id
  GET  /api/v1/jobs/getTask      - fetch a job record by task id
  GET  /api/v1/chat/credit       - remaining account credits

Responses are enveloped as {"code": 200, "msg": "...", "data": {...}},
but older endpoints answer with bare objects, so ids and balances are
looked up in both places.
"""

from typing import Any

import httpx

from fanverse_studio.common.errors import DispatchFailedError, ProviderQueryError
from fanverse_studio.common.observability import get_logger
from fanverse_studio.settings import Settings

logger = get_logger(__name__)

_TASK_ID_FIELDS = ("taskId", "id", "job_id")
_CREDIT_FIELDS = ("credits", "credit", "balance")


def _lookup(body: Any, fields: tuple[str, ...]) -> Any:
    """Return the first present field from the body or its `data` envelope."""
    if not isinstance(body, dict):
        return None
    scopes = [body]
    if isinstance(body.get("data"), dict):
        scopes.append(body["data"])
    for scope in scopes:
        for name in fields:
            if scope.get(name) is not None:
                return scope[name]
    if isinstance(body.get("data"), (int, float)) and not isinstance(body.get("data"), bool):
        return body["data"]
    return None


class KieClient:
    """Async client for the kie.ai job API.

    Implements IGenerationProviderClient from core/interfaces.py. Every
    call is bounded by provider_timeout_seconds; a timeout on dispatch is
    reported exactly like any other synchronous dispatch failure.
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize KieClient with service settings.

        Args:
            settings: Service settings with kie_api_key, kie_base_url and timeout.
            transport: Optional httpx transport (tests inject httpx.MockTransport).
        """
        self._base_url = settings.kie_base_url.rstrip("/")
        self._api_key = settings.kie_api_key
        self._timeout = settings.provider_timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout),
            headers={"Authorization": f"Bearer {self._api_key}"},
            transport=self._transport,
        )

    async def create_task(self, payload: dict[str, Any]) -> str:
        """Submit one generation job.

        Args:
            payload: Request body built by the provider capability.

        Returns:
            The provider task id.

        Raises:
            DispatchFailedError: On timeout, transport error, non-2xx status,
                a provider error code, or a response without a task id.
        """
        try:
            async with self._client() as client:
                response = await client.post("/api/v1/jobs/createTask", json=payload)
        except httpx.TimeoutException as exc:
            raise DispatchFailedError(f"Provider timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            raise DispatchFailedError(f"Provider request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error:
            message = body.get("message") or body.get("msg") if isinstance(body, dict) else None
            logger.warning(
                "kie_create_task_rejected",
                status_code=response.status_code,
                response_text=response.text[:500],
            )
            raise DispatchFailedError(message or f"Provider returned HTTP {response.status_code}")

        code = body.get("code") if isinstance(body, dict) else None
        if code is not None and code != 200:
            raise DispatchFailedError(str(body.get("msg") or body.get("message") or f"Provider error {code}"))

        task_id = _lookup(body, _TASK_ID_FIELDS)
        if not task_id:
            raise DispatchFailedError("Provider response did not include a task id")
        return str(task_id)

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """Fetch the current job record for a task.

        Raises:
            ProviderQueryError: On transport error, non-2xx status, or a non-JSON body.
        """
        try:
            async with self._client() as client:
                response = await client.get("/api/v1/jobs/getTask", params={"taskId": task_id})
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderQueryError(
                f"Task query returned HTTP {exc.response.status_code}", task_id=task_id
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderQueryError(f"Task query failed: {exc}", task_id=task_id) from exc
        except ValueError as exc:
            raise ProviderQueryError("Task query returned a non-JSON body", task_id=task_id) from exc

        if not isinstance(body, dict):
            raise ProviderQueryError("Task query returned an unexpected body", task_id=task_id)
        return body

    async def get_account_credits(self) -> int | None:
        """Return the remaining provider credits, or None when they cannot be read."""
        if not self.configured:
            return None
        try:
            async with self._client() as client:
                response = await client.get("/api/v1/chat/credit")
            if response.is_error:
                logger.warning("kie_credit_check_rejected", status_code=response.status_code)
                return None
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("kie_credit_check_failed", error=str(exc))
            return None

        credits = _lookup(body, _CREDIT_FIELDS)
        if isinstance(credits, (int, float)) and not isinstance(credits, bool):
            return int(credits)
        logger.info("kie_credit_check_unrecognized", response=body)
        return None
