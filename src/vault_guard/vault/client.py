"""HTTP client for the Obsidian Local REST API.

This is a thin wrapper: it maps an ``OperationRequest`` onto the REST
surface and reports the result. All policy decisions happen before a
request reaches this module.
"""

from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote

import httpx
import structlog

from ..config import ResolvedConfig
from ..safety.models import ExecutionFailure, HttpMethod, OperationRequest, Period, TargetKind
from .models import CommandList, FetchResult, VaultResponse

logger = structlog.get_logger(__name__)

MARKDOWN_CONTENT_TYPE = "text/markdown"
NOTE_JSON_CONTENT_TYPE = "application/vnd.olrapi.note+json"


class VaultBackend(Protocol):
    """Interface the guardrail pipeline consumes."""

    async def fetch(self, request: OperationRequest) -> FetchResult: ...

    async def execute(
        self, request: OperationRequest, approved_content: Optional[str]
    ) -> VaultResponse: ...


def status_category(status_code: int) -> str:
    """Bucket an HTTP status code."""
    if 200 <= status_code < 300:
        return "2xx"
    if 400 <= status_code < 500:
        return "4xx"
    if 500 <= status_code < 600:
        return "5xx"
    return "other"


class VaultClient:
    """Async client for the vault REST service."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        verify_ssl: bool = False,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the vault client.

        Args:
            base_url: Service URL, e.g. ``https://127.0.0.1:27124``
            api_key: Bearer token
            verify_ssl: Verify the service certificate
            timeout_seconds: Request timeout
            transport: Custom transport, used by tests
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.verify_ssl = verify_ssl
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(
        cls, config: ResolvedConfig, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "VaultClient":
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            verify_ssl=config.verify_ssl,
            timeout_seconds=config.timeout_seconds,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                verify=self.verify_ssl,
                timeout=self.timeout_seconds,
                transport=self.transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "VaultClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def endpoint_for(self, request: OperationRequest) -> str:
        """Map a request to its REST endpoint."""
        if request.target_kind == TargetKind.ACTIVE:
            return "/active/"
        if request.target_kind == TargetKind.PERIODIC:
            period = request.period.value if request.period else "daily"
            return f"/periodic/{period}/"
        if request.target_kind == TargetKind.COMMAND:
            return f"/commands/{quote(request.command_id or '', safe='')}/"
        return f"/vault/{quote(request.path, safe='/')}"

    async def fetch(self, request: OperationRequest) -> FetchResult:
        """Read the current content of the addressed resource.

        Returns:
            FetchResult with ``exists=False`` on 404

        Raises:
            ExecutionFailure: If the service cannot be read
        """
        client = await self._get_client()
        endpoint = self.endpoint_for(request)

        try:
            response = await client.get(
                endpoint, headers={"Accept": MARKDOWN_CONTENT_TYPE}
            )
        except httpx.HTTPError as e:
            raise ExecutionFailure(
                f"Could not read {request.display_target}: {e}",
                method="GET",
                resource_key=request.resource_key,
                status_category="network",
            ) from e

        if response.status_code == 404:
            return FetchResult(exists=False, path=request.path or None)

        if not response.is_success:
            raise ExecutionFailure(
                f"Could not read {request.display_target}: "
                f"{self._parse_error_message(response)}",
                method="GET",
                resource_key=request.resource_key,
                status_category=status_category(response.status_code),
                status_code=response.status_code,
            )

        return FetchResult(exists=True, content=response.text, path=request.path or None)

    async def execute(
        self, request: OperationRequest, approved_content: Optional[str]
    ) -> VaultResponse:
        """Execute an approved request.

        Args:
            request: Approved operation
            approved_content: Body to send, if any

        Returns:
            VaultResponse describing the service result
        """
        client = await self._get_client()
        endpoint = self.endpoint_for(request)
        headers = self._headers_for(request, approved_content)

        self.logger.debug(
            "Executing vault request",
            method=request.method.value,
            endpoint=endpoint,
        )

        try:
            response = await client.request(
                request.method.value,
                endpoint,
                content=approved_content.encode("utf-8") if approved_content is not None else None,
                headers=headers,
            )
        except httpx.HTTPError as e:
            self.logger.error(
                "Vault request failed",
                method=request.method.value,
                endpoint=endpoint,
                error=str(e),
            )
            return VaultResponse(
                success=False,
                status_category="network",
                error_message=str(e),
            )

        category = status_category(response.status_code)
        success = category == "2xx"

        result = VaultResponse(
            success=success,
            status_category=category,
            status_code=response.status_code,
            body=response.text or None,
            error_message=None if success else self._parse_error_message(response),
        )

        self.logger.info(
            "Vault request completed",
            method=request.method.value,
            endpoint=endpoint,
            status_code=response.status_code,
            success=success,
        )
        return result

    async def fetch_periodic(self, period: Period) -> FetchResult:
        """Resolve the note for the current ``period``.

        Returns:
            FetchResult whose ``path`` is the vault path of the current
            periodic note; ``exists=False`` on 404

        Raises:
            ExecutionFailure: If the service cannot be read
        """
        client = await self._get_client()
        resource_key = f"periodic/{period.value}"

        try:
            response = await client.get(
                f"/periodic/{period.value}/", headers={"Accept": NOTE_JSON_CONTENT_TYPE}
            )
        except httpx.HTTPError as e:
            raise ExecutionFailure(
                f"Could not resolve the current {period.value} note: {e}",
                method="GET",
                resource_key=resource_key,
                status_category="network",
            ) from e

        if response.status_code == 404:
            return FetchResult(exists=False)

        if not response.is_success:
            raise ExecutionFailure(
                f"Could not resolve the current {period.value} note: "
                f"{self._parse_error_message(response)}",
                method="GET",
                resource_key=resource_key,
                status_category=status_category(response.status_code),
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ExecutionFailure(
                f"Unexpected response for the current {period.value} note",
                method="GET",
                resource_key=resource_key,
                status_category=status_category(response.status_code),
                status_code=response.status_code,
            ) from e

        if not isinstance(payload, dict):
            payload = {}

        path = payload.get("path")
        return FetchResult(
            exists=True,
            content=payload.get("content"),
            path=str(path).lstrip("/") if path else None,
        )

    async def list_commands(self) -> CommandList:
        """List commands registered in the vault application.

        Raises:
            ExecutionFailure: If the listing cannot be read or parsed
        """
        client = await self._get_client()
        try:
            response = await client.get("/commands/")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExecutionFailure(
                f"Could not list commands: {e}",
                method="GET",
                resource_key="commands",
                status_category="network",
            ) from e

        try:
            return CommandList.model_validate(response.json())
        except ValueError as e:
            # covers JSON decode errors and pydantic ValidationError
            raise ExecutionFailure(
                f"Unexpected command listing: {e}",
                method="GET",
                resource_key="commands",
                status_category=status_category(response.status_code),
                status_code=response.status_code,
            ) from e

    def _headers_for(
        self, request: OperationRequest, approved_content: Optional[str]
    ) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if approved_content is not None:
            headers["Content-Type"] = MARKDOWN_CONTENT_TYPE

        if request.method == HttpMethod.PATCH and request.patch_mode is not None:
            headers["Operation"] = request.patch_mode.value
            if request.patch_target_type is not None:
                headers["Target-Type"] = request.patch_target_type.value
            if request.patch_target is not None:
                headers["Target"] = quote(request.patch_target, safe="")

        return headers

    def _parse_error_message(self, response: httpx.Response) -> str:
        """Extract a readable error from a failed response."""
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])

        lines = response.text.strip().split("\n")
        return lines[0] if lines and lines[0] else f"HTTP {response.status_code}"
