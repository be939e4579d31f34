"""
Proxmox VE HTTP Client

Async client for the hypervisor management API with token authentication,
typed responses and classification of failures into transient, fatal and
per-request errors.
"""

import logging
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from apps.backend.src.core.config import ProxmoxSettings, get_settings
from apps.backend.src.core.exceptions import (
    APIRequestError,
    ConfigurationError,
    FatalAPIError,
    TransientAPIError,
)
from apps.backend.src.schemas.common import ResourceType
from apps.backend.src.schemas.proxmox import (
    ApiGuest,
    ApiGuestStatus,
    ApiNode,
    ApiNodeStatus,
    ApiNodeStorage,
    ApiStorageConfig,
    ApiTaskListEntry,
    ApiTaskLogLine,
    ApiTaskStatus,
)
from apps.backend.src.schemas.task import OperationType

logger = logging.getLogger(__name__)

_GUEST_PATHS = {ResourceType.VM: "qemu", ResourceType.CONTAINER: "lxc"}

_nodes_adapter = TypeAdapter(list[ApiNode])
_guests_adapter = TypeAdapter(list[ApiGuest])
_storage_config_adapter = TypeAdapter(list[ApiStorageConfig])
_node_storage_adapter = TypeAdapter(list[ApiNodeStorage])
_log_adapter = TypeAdapter(list[ApiTaskLogLine])
_task_list_adapter = TypeAdapter(list[ApiTaskListEntry])


@runtime_checkable
class HypervisorAPI(Protocol):
    """Operations the sync engine requires from the hypervisor management API"""

    async def list_nodes(self) -> list[ApiNode]: ...

    async def get_node_status(self, node: str) -> ApiNodeStatus: ...

    async def list_guests(self, node: str, resource_type: ResourceType) -> list[ApiGuest]: ...

    async def get_guest_status(
        self, node: str, resource_type: ResourceType, vmid: int
    ) -> ApiGuestStatus: ...

    async def get_guest_config(
        self, node: str, resource_type: ResourceType, vmid: int
    ) -> dict[str, Any]: ...

    async def list_storage_config(self) -> list[ApiStorageConfig]: ...

    async def list_node_storage(self, node: str) -> list[ApiNodeStorage]: ...

    async def submit_operation(
        self,
        node: str,
        resource_type: ResourceType,
        operation: OperationType,
        vmid: int,
        params: dict[str, Any] | None = None,
    ) -> str: ...

    async def get_task_status(self, node: str, upid: str) -> ApiTaskStatus: ...

    async def get_task_log(self, node: str, upid: str) -> list[str]: ...

    async def list_tasks(self, node: str, limit: int = 500) -> list[ApiTaskListEntry]: ...

    async def close(self) -> None: ...


def build_token_header(user: str, token_id: str, token_secret: str) -> str:
    """Authorization header value for an API token."""
    token = token_id if "!" in token_id else f"{user}!{token_id}"
    return f"PVEAPIToken={token}={token_secret}"


class ProxmoxClient:
    """HTTP client for the Proxmox VE API with connection pooling and error mapping"""

    def __init__(
        self,
        base_url: str,
        authorization: str,
        verify_ssl: bool = True,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        if not verify_ssl:
            logger.warning(f"TLS certificate verification disabled for {self.base_url}")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            verify=verify_ssl,
            transport=transport,
            headers={"Accept": "application/json", "Authorization": authorization},
        )

    @classmethod
    def from_settings(
        cls,
        settings: ProxmoxSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ProxmoxClient":
        settings = settings or get_settings().proxmox
        if not settings.proxmox_token_id or not settings.proxmox_token_secret:
            raise ConfigurationError(
                "PROXMOX_TOKEN_ID and PROXMOX_TOKEN_SECRET must be set",
                config_key="proxmox_token_id",
            )
        return cls(
            base_url=settings.base_url,
            authorization=build_token_header(
                settings.proxmox_user, settings.proxmox_token_id, settings.proxmox_token_secret
            ),
            verify_ssl=settings.proxmox_verify_ssl,
            timeout=settings.proxmox_request_timeout,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """Perform a request and return the ``data`` member of the response envelope"""
        logger.debug(f"{method} {self.base_url}{path}")
        try:
            response = await self.client.request(method, path, params=params, data=data)
        except httpx.TimeoutException as e:
            raise TransientAPIError(f"Timeout calling {path}: {e}", path=path) from e
        except httpx.TransportError as e:
            raise TransientAPIError(f"Connection error calling {path}: {e}", path=path) from e

        status = response.status_code
        if status in (401, 403):
            raise FatalAPIError(
                f"Authentication rejected for {path} ({status})", status_code=status, path=path
            )
        if status >= 500:
            # 595 is returned by the proxy when the target node is unreachable
            raise TransientAPIError(
                f"Server error {status} for {path}: {response.reason_phrase}",
                status_code=status,
                path=path,
            )
        if status >= 400:
            raise APIRequestError(
                f"Request failed with {status} for {path}: {response.text[:200]}",
                status_code=status,
                path=path,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise APIRequestError(f"Invalid JSON from {path}", status_code=status, path=path) from e
        if not isinstance(payload, dict):
            raise APIRequestError(f"Unexpected response shape from {path}", status_code=status, path=path)
        return payload.get("data")

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._request("GET", path, params=params)

    @staticmethod
    def _parse(adapter: TypeAdapter, data: Any, path: str) -> Any:
        try:
            return adapter.validate_python(data if data is not None else [])
        except PydanticValidationError as e:
            raise APIRequestError(f"Unexpected payload from {path}: {e}", path=path) from e

    @staticmethod
    def _guest_path(node: str, resource_type: ResourceType) -> str:
        try:
            kind = _GUEST_PATHS[ResourceType(resource_type)]
        except KeyError:
            raise APIRequestError(f"Unsupported guest type: {resource_type}") from None
        return f"/nodes/{quote(node, safe='')}/{kind}"

    async def list_nodes(self) -> list[ApiNode]:
        return self._parse(_nodes_adapter, await self._get("/nodes"), "/nodes")

    async def get_node_status(self, node: str) -> ApiNodeStatus:
        path = f"/nodes/{quote(node, safe='')}/status"
        data = await self._get(path)
        try:
            return ApiNodeStatus.model_validate(data or {})
        except PydanticValidationError as e:
            raise APIRequestError(f"Unexpected payload from {path}: {e}", path=path) from e

    async def list_guests(self, node: str, resource_type: ResourceType) -> list[ApiGuest]:
        path = self._guest_path(node, resource_type)
        return self._parse(_guests_adapter, await self._get(path), path)

    async def get_guest_status(
        self, node: str, resource_type: ResourceType, vmid: int
    ) -> ApiGuestStatus:
        path = f"{self._guest_path(node, resource_type)}/{vmid}/status/current"
        data = await self._get(path)
        try:
            return ApiGuestStatus.model_validate(data or {})
        except PydanticValidationError as e:
            raise APIRequestError(f"Unexpected payload from {path}: {e}", path=path) from e

    async def get_guest_config(
        self, node: str, resource_type: ResourceType, vmid: int
    ) -> dict[str, Any]:
        path = f"{self._guest_path(node, resource_type)}/{vmid}/config"
        data = await self._get(path)
        if not isinstance(data, dict):
            raise APIRequestError(f"Unexpected payload from {path}", path=path)
        return data

    async def list_storage_config(self) -> list[ApiStorageConfig]:
        return self._parse(_storage_config_adapter, await self._get("/storage"), "/storage")

    async def list_node_storage(self, node: str) -> list[ApiNodeStorage]:
        path = f"/nodes/{quote(node, safe='')}/storage"
        return self._parse(_node_storage_adapter, await self._get(path), path)

    async def submit_operation(
        self,
        node: str,
        resource_type: ResourceType,
        operation: OperationType,
        vmid: int,
        params: dict[str, Any] | None = None,
    ) -> str:
        """Submit a lifecycle operation and return the UPID of the spawned task"""
        base = self._guest_path(node, resource_type)
        operation = OperationType(operation)
        body = dict(params or {})

        if operation == OperationType.CREATE:
            body["vmid"] = vmid
            upid = await self._request("POST", base, data=body)
        elif operation == OperationType.DELETE:
            upid = await self._request("DELETE", f"{base}/{vmid}", params=body or None)
        else:
            upid = await self._request(
                "POST", f"{base}/{vmid}/status/{operation.value}", data=body or None
            )

        if not isinstance(upid, str) or not upid.startswith("UPID:"):
            raise APIRequestError(f"No task id returned for {operation.value} of {vmid}", path=base)
        logger.info(
            f"Submitted {operation.value} for {ResourceType(resource_type).value} {vmid} on {node}: {upid}"
        )
        return upid

    async def get_task_status(self, node: str, upid: str) -> ApiTaskStatus:
        path = f"/nodes/{quote(node, safe='')}/tasks/{quote(upid, safe='')}/status"
        data = await self._get(path)
        try:
            return ApiTaskStatus.model_validate(data or {})
        except PydanticValidationError as e:
            raise APIRequestError(f"Unexpected payload from {path}: {e}", path=path) from e

    async def get_task_log(self, node: str, upid: str) -> list[str]:
        path = f"/nodes/{quote(node, safe='')}/tasks/{quote(upid, safe='')}/log"
        lines = self._parse(_log_adapter, await self._get(path, params={"start": 0, "limit": 5000}), path)
        return [line.t for line in sorted(lines, key=lambda line: line.n)]

    async def list_tasks(self, node: str, limit: int = 500) -> list[ApiTaskListEntry]:
        """Recent tasks of a node, running ones included"""
        path = f"/nodes/{quote(node, safe='')}/tasks"
        data = await self._get(path, params={"source": "all", "limit": limit})
        return self._parse(_task_list_adapter, data, path)

    async def test_connectivity(self) -> bool:
        """Test if the API is reachable with the configured credentials"""
        try:
            await self._get("/version")
            return True
        except (TransientAPIError, FatalAPIError, APIRequestError) as e:
            logger.warning(f"Proxmox connectivity test failed: {e}")
            return False

    async def close(self) -> None:
        """Close HTTP client connections"""
        await self.client.aclose()
