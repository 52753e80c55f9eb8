"""Fly Machines API client wrapper.

One method per resource kind and verb. Each method performs exactly one
remote call and either returns the decoded resource or raises a classified
error. No retries, no waiting and no caching happen here.
"""
import logging
import re
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .errors import (
    ApiError,
    ConflictError,
    FlyError,
    InvalidInputError,
    NotFoundError,
    TransientError,
)
from .models import (
    App,
    ExecResult,
    IpAssignment,
    IpRequest,
    Machine,
    MachineConfig,
    SecretKey,
    Volume,
    VolumeCreateRequest,
)
from .transport import RequestsTransport, Transport, TransportResponse
from .validation import validate_identifier, validate_ip_address

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.machines.dev/v1"

T = TypeVar("T")

TRANSIENT_STATUSES = frozenset({408, 429})
INVALID_INPUT_STATUSES = frozenset({400, 422})

MACHINE_NAME_CONFLICT = re.compile(
    r"^already_exists: unique machine name violation, machine ID (?P<id>\S+) already exists with name "
)


def classify_response(method: str, path: str, response: TransportResponse,
                      include_body: bool = True) -> FlyError:
    """
    Map a non-success response onto the error taxonomy.

    Args:
        method: HTTP method of the failed request
        path: Request path
        response: The failed response
        include_body: If False the response body is left out of the message

    Returns:
        The classified error (not raised)
    """
    status = response.status
    message = f"{method} {path} failed with status {status}"
    if include_body and response.text:
        message = f"{message}: {response.text}"

    if status == 404:
        return NotFoundError(message, status=status)
    if status == 409:
        return ConflictError(message, status=status)
    if status in INVALID_INPUT_STATUSES:
        return InvalidInputError(message, status=status)
    if status in TRANSIENT_STATUSES or status >= 500:
        return TransientError(message, status=status)
    return ApiError(message, status=status)


def _error_text(response: TransportResponse) -> str:
    if isinstance(response.body, dict) and isinstance(response.body.get("error"), str):
        return response.body["error"]
    return response.text or ""


class FlyClient:
    """Stateless client for the Fly Machines REST API."""

    def __init__(self, api_token: str, transport: Optional[Transport] = None,
                 base_url: str = API_BASE_URL):
        if not api_token:
            raise InvalidInputError("API token cannot be empty")
        self._api_token = api_token
        self._transport = transport or RequestsTransport(base_url)
        self.apps = AppsApi(self)
        self.machines = MachinesApi(self)
        self.volumes = VolumesApi(self)
        self.ips = IpsApi(self)
        self.secrets = SecretsApi(self)

    def __repr__(self) -> str:
        return f"FlyClient(transport={self._transport!r})"

    def send(self, method: str, path: str, json_body: Any = None,
             params: Optional[Dict[str, str]] = None) -> TransportResponse:
        """Send one request with the bearer token; transport failures raise TransientError."""
        headers = {
            "Authorization": f"Bearer {self._api_token}",
            "Accept": "application/json",
        }
        logger.debug(f"{method} {path}")
        return self._transport.request(method, path, headers=headers, json_body=json_body, params=params)

    def call(self, method: str, path: str, json_body: Any = None,
             params: Optional[Dict[str, str]] = None, include_body: bool = True) -> Any:
        """Send a request and return the decoded body, raising a classified error on failure."""
        response = self.send(method, path, json_body=json_body, params=params)
        if not response.ok:
            raise classify_response(method, path, response, include_body=include_body)
        return response.body

    @staticmethod
    def expect_json(method: str, path: str, body: Any, kind: type = dict) -> Any:
        if not isinstance(body, kind):
            raise TransientError(f"{method} {path} returned a malformed response body")
        return body

    @staticmethod
    def decode(method: str, path: str, body: Any, factory: Callable[[Any], T], kind: type = dict) -> T:
        """
        Build the result of a call from its response body.

        Raises:
            TransientError: If the body is not of ``kind`` or lacks fields ``factory`` needs
        """
        body = FlyClient.expect_json(method, path, body, kind)
        try:
            return factory(body)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise TransientError(
                f"{method} {path} returned a malformed response body ({type(e).__name__}: {e})"
            ) from e


class AppsApi:
    def __init__(self, client: FlyClient):
        self._client = client

    def list(self, org_slug: str) -> List[App]:
        validate_identifier("org slug", org_slug)
        body = self._client.call("GET", "/apps", params={"org_slug": org_slug})
        return FlyClient.decode(
            "GET", "/apps", body, lambda b: [App.from_api(item) for item in b.get("apps") or []]
        )

    def get(self, app_name: str) -> App:
        validate_identifier("app name", app_name)
        path = f"/apps/{app_name}"
        return FlyClient.decode("GET", path, self._client.call("GET", path), App.from_api)

    def create(self, org_slug: str, app_name: str) -> App:
        """
        Create an app, treating "already exists in the same org" as success.

        Returns:
            The created (or already existing) app

        Raises:
            ConflictError: If the name is taken by a different organization
        """
        validate_identifier("org slug", org_slug)
        validate_identifier("app name", app_name)
        payload = {"app_name": app_name, "org_slug": org_slug}
        response = self._client.send("POST", "/apps", json_body=payload)
        if response.ok:
            return FlyClient.decode("POST", "/apps", response.body,
                                    lambda b: App(id=b["id"], name=app_name, org_slug=org_slug))

        create_error = classify_response("POST", "/apps", response)
        if response.status != 422:
            raise create_error

        # 422 is returned for taken names; check whether we already own it.
        try:
            existing = self.get(app_name)
        except NotFoundError:
            raise create_error from None
        if existing.org_slug == org_slug:
            logger.info(f"App '{app_name}' already exists in org '{org_slug}'")
            return existing
        raise ConflictError(
            f"App '{app_name}' already exists but belongs to organization "
            f"'{existing.org_slug}', not the requested '{org_slug}'",
            status=422,
        )

    def delete(self, app_name: str, force: bool = False) -> None:
        validate_identifier("app name", app_name)
        params = {"force": "true"} if force else None
        self._client.call("DELETE", f"/apps/{app_name}", params=params)


class MachinesApi:
    def __init__(self, client: FlyClient):
        self._client = client

    def list(self, app_name: str) -> List[Machine]:
        validate_identifier("app name", app_name)
        path = f"/apps/{app_name}/machines"
        body = self._client.call("GET", path)
        return FlyClient.decode("GET", path, body, lambda b: [Machine.from_api(item) for item in b], list)

    def get(self, app_name: str, machine_id: str) -> Machine:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        path = f"/apps/{app_name}/machines/{machine_id}"
        return FlyClient.decode("GET", path, self._client.call("GET", path), Machine.from_api)

    def create(self, app_name: str, machine_name: str, config: MachineConfig,
               region: Optional[str] = None, skip_launch: bool = False) -> str:
        """
        Create a machine and return its id.

        The platform assigns the id immediately while the state converges
        asynchronously. A name conflict returns the id of the existing machine,
        so resubmitting the same create is safe.
        """
        validate_identifier("app name", app_name)
        validate_identifier("machine name", machine_name)
        path = f"/apps/{app_name}/machines"
        payload: Dict[str, Any] = {"name": machine_name, "config": config.to_api()}
        if region:
            payload["region"] = validate_identifier("region", region).lower()
        if skip_launch:
            payload["skip_launch"] = True

        response = self._client.send("POST", path, json_body=payload)
        if response.ok:
            return FlyClient.decode("POST", path, response.body, lambda b: b["id"])
        if response.status == 409:
            match = MACHINE_NAME_CONFLICT.match(_error_text(response))
            if match:
                machine_id = match.group("id")
                logger.info(f"Machine '{machine_name}' already exists with id {machine_id}")
                return machine_id
        raise classify_response("POST", path, response)

    def update(self, app_name: str, machine_id: str, config: MachineConfig,
               region: Optional[str] = None) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        path = f"/apps/{app_name}/machines/{machine_id}"
        payload: Dict[str, Any] = {"config": config.to_api()}
        if region:
            payload["region"] = validate_identifier("region", region).lower()
        body = FlyClient.expect_json("POST", path, self._client.call("POST", path, json_body=payload))
        if body.get("id") != machine_id:
            raise ApiError(f"Unexpected id returned, expected {machine_id} got {body.get('id')}")

    def _lifecycle(self, app_name: str, machine_id: str, action: str) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        self._client.call("POST", f"/apps/{app_name}/machines/{machine_id}/{action}")

    def start(self, app_name: str, machine_id: str) -> None:
        self._lifecycle(app_name, machine_id, "start")

    def stop(self, app_name: str, machine_id: str) -> None:
        self._lifecycle(app_name, machine_id, "stop")

    def suspend(self, app_name: str, machine_id: str) -> None:
        self._lifecycle(app_name, machine_id, "suspend")

    def restart(self, app_name: str, machine_id: str) -> None:
        self._lifecycle(app_name, machine_id, "restart")

    def exec(self, app_name: str, machine_id: str, command: List[str]) -> ExecResult:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        if not command:
            raise InvalidInputError("Command cannot be empty")
        path = f"/apps/{app_name}/machines/{machine_id}/exec"
        body = self._client.call("POST", path, json_body={"command": list(command)})
        return FlyClient.decode("POST", path, body, ExecResult.from_api)

    def delete(self, app_name: str, machine_id: str, force: bool = False) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        self._client.call(
            "DELETE",
            f"/apps/{app_name}/machines/{machine_id}",
            params={"force": "true" if force else "false"},
        )


class VolumesApi:
    def __init__(self, client: FlyClient):
        self._client = client

    def list(self, app_name: str) -> List[Volume]:
        validate_identifier("app name", app_name)
        path = f"/apps/{app_name}/volumes"
        body = self._client.call("GET", path)
        return FlyClient.decode("GET", path, body, lambda b: [Volume.from_api(item) for item in b], list)

    def get(self, app_name: str, volume_id: str) -> Volume:
        validate_identifier("app name", app_name)
        validate_identifier("volume id", volume_id)
        path = f"/apps/{app_name}/volumes/{volume_id}"
        return FlyClient.decode("GET", path, self._client.call("GET", path), Volume.from_api)

    def create(self, app_name: str, request: VolumeCreateRequest) -> Volume:
        validate_identifier("app name", app_name)
        path = f"/apps/{app_name}/volumes"
        body = self._client.call("POST", path, json_body=request.to_api())
        return FlyClient.decode("POST", path, body, Volume.from_api)

    def extend(self, app_name: str, volume_id: str, size_gb: int) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("volume id", volume_id)
        self._client.call("PUT", f"/apps/{app_name}/volumes/{volume_id}/extend",
                          json_body={"size_gb": size_gb})

    def delete(self, app_name: str, volume_id: str) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("volume id", volume_id)
        self._client.call("DELETE", f"/apps/{app_name}/volumes/{volume_id}")


class IpsApi:
    def __init__(self, client: FlyClient):
        self._client = client

    def list(self, app_name: str) -> List[IpAssignment]:
        validate_identifier("app name", app_name)
        path = f"/apps/{app_name}/ip_assignments"
        body = self._client.call("GET", path)
        return FlyClient.decode(
            "GET", path, body, lambda b: [IpAssignment.from_api(item) for item in b.get("ips") or []]
        )

    def allocate(self, app_name: str, request: IpRequest) -> str:
        validate_identifier("app name", app_name)
        path = f"/apps/{app_name}/ip_assignments"
        body = self._client.call("POST", path, json_body=request.to_api())
        return FlyClient.decode("POST", path, body, lambda b: b["ip"])

    def release(self, app_name: str, ip: str) -> None:
        validate_identifier("app name", app_name)
        validate_ip_address(ip)
        self._client.call("DELETE", f"/apps/{app_name}/ip_assignments/{ip}")


class SecretsApi:
    def __init__(self, client: FlyClient):
        self._client = client

    def list(self, app_name: str) -> List[SecretKey]:
        """List secret keys. The platform never returns values."""
        validate_identifier("app name", app_name)
        path = f"/apps/{app_name}/secrets"
        body = self._client.call("GET", path)
        return FlyClient.decode(
            "GET", path, body, lambda b: [SecretKey.from_api(item) for item in b.get("secrets") or []]
        )

    def put(self, app_name: str, secret_name: str, value: str) -> SecretKey:
        """Set a secret value. The response body is never echoed into errors."""
        validate_identifier("app name", app_name)
        validate_identifier("secret name", secret_name)
        path = f"/apps/{app_name}/secrets/{secret_name}"
        body = self._client.call("POST", path, json_body={"value": value}, include_body=False)
        if isinstance(body, dict) and body.get("name"):
            return SecretKey.from_api(body)
        return SecretKey(name=secret_name)

    def delete(self, app_name: str, secret_name: str) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("secret name", secret_name)
        self._client.call("DELETE", f"/apps/{app_name}/secrets/{secret_name}")
