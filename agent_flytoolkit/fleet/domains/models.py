"""Domain models for Fly Machines API resources.

Every resource is an immutable value fetched fresh per call. ``from_api``
builds a model from the Machines API JSON and ``to_api`` produces request
payloads (snake_case keys, unset fields omitted).
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .errors import InvalidInputError
from .validation import validate_identifier


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


def _normalize_keys(payload: Mapping[str, Any]) -> Dict[str, Any]:
    # Accept kebab-case keys (as written in hand-made config files) as well as snake_case.
    return {key.replace("-", "_"): value for key, value in payload.items()}


def _parse_enum(enum_cls, value: Any, what: str):
    if value is None:
        return None
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidInputError(f"Invalid {what} '{value}', expected one of: {allowed}")


class MachineState(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    SUSPENDING = "suspending"
    SUSPENDED = "suspended"
    REPLACING = "replacing"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "MachineState":
        """Observed states are platform-driven; anything unexpected maps to UNKNOWN."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


class CpuKind(str, Enum):
    SHARED = "shared"
    PERFORMANCE = "performance"


class RestartPolicy(str, Enum):
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    SPOT_PRICE = "spot-price"


class ServiceProtocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class PortHandler(str, Enum):
    HTTP = "http"
    TLS = "tls"
    PG_TLS = "pg_tls"
    PROXY_PROTO = "proxy_proto"
    EDGE_HTTP = "edge_http"


class HostStatus(str, Enum):
    OK = "ok"
    UNKNOWN = "unknown"
    UNREACHABLE = "unreachable"

    @classmethod
    def parse(cls, value: Optional[str]) -> "HostStatus":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


class IpFamily(str, Enum):
    V4 = "v4"
    SHARED_V4 = "shared_v4"
    V6 = "v6"
    PRIVATE_V6 = "private_v6"


@dataclass(frozen=True)
class App:
    id: str
    name: str
    org_slug: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "App":
        organization = data.get("organization") or {}
        return cls(
            id=data["id"],
            name=data["name"],
            org_slug=organization.get("slug") if isinstance(organization, Mapping) else None,
            status=data.get("status"),
        )


@dataclass
class GuestConfig:
    cpu_kind: Optional[CpuKind] = None
    cpus: Optional[int] = None
    memory_mb: Optional[int] = None
    kernel_args: Optional[List[str]] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "GuestConfig":
        data = _normalize_keys(data)
        return cls(
            cpu_kind=_parse_enum(CpuKind, data.get("cpu_kind"), "cpu kind"),
            cpus=data.get("cpus"),
            memory_mb=data.get("memory_mb"),
            kernel_args=data.get("kernel_args"),
        )

    def to_api(self) -> Dict[str, Any]:
        return _drop_none({
            "cpu_kind": self.cpu_kind.value if self.cpu_kind else None,
            "cpus": self.cpus,
            "memory_mb": self.memory_mb,
            "kernel_args": self.kernel_args,
        })


@dataclass
class InitConfig:
    cmd: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    exec: Optional[List[str]] = None
    kernel_args: Optional[List[str]] = None
    swap_size_mb: Optional[int] = None
    tty: Optional[bool] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "InitConfig":
        data = _normalize_keys(data)
        return cls(
            cmd=data.get("cmd"),
            entrypoint=data.get("entrypoint"),
            exec=data.get("exec"),
            kernel_args=data.get("kernel_args"),
            swap_size_mb=data.get("swap_size_mb"),
            tty=data.get("tty"),
        )

    def to_api(self) -> Dict[str, Any]:
        return _drop_none({
            "cmd": self.cmd,
            "entrypoint": self.entrypoint,
            "exec": self.exec,
            "kernel_args": self.kernel_args,
            "swap_size_mb": self.swap_size_mb,
            "tty": self.tty,
        })


@dataclass
class MachineRestart:
    policy: RestartPolicy
    max_retries: Optional[int] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "MachineRestart":
        data = _normalize_keys(data)
        policy = _parse_enum(RestartPolicy, data.get("policy"), "restart policy")
        if policy is None:
            raise InvalidInputError("Restart configuration requires a 'policy'")
        return cls(policy=policy, max_retries=data.get("max_retries"))

    def to_api(self) -> Dict[str, Any]:
        return _drop_none({"policy": self.policy.value, "max_retries": self.max_retries})


@dataclass
class StopConfig:
    signal: Optional[str] = None
    timeout: Optional[str] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "StopConfig":
        return cls(signal=data.get("signal"), timeout=data.get("timeout"))

    def to_api(self) -> Dict[str, Any]:
        return _drop_none({"signal": self.signal, "timeout": self.timeout})


@dataclass
class Mount:
    volume: str
    path: str

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Mount":
        if not data.get("volume") or not data.get("path"):
            raise InvalidInputError("Mounts require both 'volume' and 'path'")
        return cls(volume=data["volume"], path=data["path"])

    def to_api(self) -> Dict[str, Any]:
        return {"volume": self.volume, "path": self.path}


@dataclass
class PortConfig:
    port: int
    handlers: List[PortHandler] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "PortConfig":
        if data.get("port") is None:
            raise InvalidInputError("Service ports require a 'port'")
        return cls(
            port=data["port"],
            handlers=[_parse_enum(PortHandler, h, "port handler") for h in data.get("handlers") or []],
        )

    def to_api(self) -> Dict[str, Any]:
        return {"port": self.port, "handlers": [h.value for h in self.handlers]}


@dataclass
class ServiceConfig:
    internal_port: int
    protocol: ServiceProtocol = ServiceProtocol.TCP
    ports: List[PortConfig] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "ServiceConfig":
        data = _normalize_keys(data)
        if data.get("internal_port") is None:
            raise InvalidInputError("Services require an 'internal_port'")
        return cls(
            internal_port=data["internal_port"],
            protocol=_parse_enum(ServiceProtocol, data.get("protocol"), "service protocol") or ServiceProtocol.TCP,
            ports=[PortConfig.from_api(p) for p in data.get("ports") or []],
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "internal_port": self.internal_port,
            "protocol": self.protocol.value,
            "ports": [p.to_api() for p in self.ports],
        }


@dataclass
class MachineConfig:
    """Desired machine configuration: image, guest resources, services, mounts, restart policy."""
    image: str
    guest: Optional[GuestConfig] = None
    auto_destroy: Optional[bool] = None
    init: Optional[InitConfig] = None
    env: Optional[Dict[str, str]] = None
    restart: Optional[MachineRestart] = None
    stop_config: Optional[StopConfig] = None
    mounts: Optional[List[Mount]] = None
    services: Optional[List[ServiceConfig]] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "MachineConfig":
        if not isinstance(data, Mapping):
            raise InvalidInputError("Machine config must be a JSON object")
        data = _normalize_keys(data)
        if not data.get("image"):
            raise InvalidInputError("Machine config requires an 'image'")
        return cls(
            image=data["image"],
            guest=GuestConfig.from_api(data["guest"]) if data.get("guest") else None,
            auto_destroy=data.get("auto_destroy"),
            init=InitConfig.from_api(data["init"]) if data.get("init") else None,
            env=dict(data["env"]) if data.get("env") else None,
            restart=MachineRestart.from_api(data["restart"]) if data.get("restart") else None,
            stop_config=StopConfig.from_api(data["stop_config"]) if data.get("stop_config") else None,
            mounts=[Mount.from_api(m) for m in data["mounts"]] if data.get("mounts") else None,
            services=[ServiceConfig.from_api(s) for s in data["services"]] if data.get("services") else None,
        )

    def to_api(self) -> Dict[str, Any]:
        return _drop_none({
            "image": self.image,
            "guest": self.guest.to_api() if self.guest else None,
            "auto_destroy": self.auto_destroy,
            "init": self.init.to_api() if self.init else None,
            "env": self.env,
            "restart": self.restart.to_api() if self.restart else None,
            "stop_config": self.stop_config.to_api() if self.stop_config else None,
            "mounts": [m.to_api() for m in self.mounts] if self.mounts is not None else None,
            "services": [s.to_api() for s in self.services] if self.services is not None else None,
        })


@dataclass(frozen=True)
class Machine:
    id: str
    name: str
    state: MachineState
    region: Optional[str]
    config: Optional[MachineConfig] = None
    instance_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    host_status: HostStatus = HostStatus.UNKNOWN

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Machine":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            state=MachineState.parse(data.get("state")),
            region=data.get("region"),
            config=MachineConfig.from_api(data["config"]) if data.get("config") else None,
            instance_id=data.get("instance_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            host_status=HostStatus.parse(data.get("host_status")),
        )


@dataclass(frozen=True)
class ExecResult:
    exit_code: Optional[int] = None
    exit_signal: Optional[int] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "ExecResult":
        return cls(
            exit_code=data.get("exit_code"),
            exit_signal=data.get("exit_signal"),
            stdout=data.get("stdout"),
            stderr=data.get("stderr"),
        )


@dataclass(frozen=True)
class Volume:
    id: str
    name: str
    state: Optional[str]
    size_gb: int
    region: str
    zone: Optional[str] = None
    encrypted: Optional[bool] = None
    attached_machine_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Volume":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            state=data.get("state"),
            size_gb=data.get("size_gb", 0),
            region=data.get("region", ""),
            zone=data.get("zone"),
            encrypted=data.get("encrypted"),
            attached_machine_id=data.get("attached_machine_id"),
            created_at=data.get("created_at"),
        )

    @property
    def is_destroyed(self) -> bool:
        return self.state in ("destroyed", "pending_destroy", "destroying")


@dataclass
class VolumeCreateRequest:
    name: str
    region: str
    size_gb: int
    encrypted: Optional[bool] = None
    snapshot_retention: Optional[int] = None
    require_unique_zone: Optional[bool] = None

    def to_api(self) -> Dict[str, Any]:
        return _drop_none({
            "name": self.name,
            "region": self.region,
            "size_gb": self.size_gb,
            "encrypted": self.encrypted,
            "snapshot_retention": self.snapshot_retention,
            "require_unique_zone": self.require_unique_zone,
        })


@dataclass
class IpRequest:
    family: IpFamily
    region: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        region = None if self.family is IpFamily.PRIVATE_V6 else self.region
        return _drop_none({"type": self.family.value, "region": region})


@dataclass(frozen=True)
class IpAssignment:
    ip: str
    family: IpFamily
    region: Optional[str] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "IpAssignment":
        ip = data["ip"]
        region = data.get("region")
        # "global" means the address is anycast, i.e. no specific region.
        if region is None or str(region).lower() == "global":
            region = None
        else:
            region = str(region).lower()
        if ":" in ip:
            family = IpFamily.PRIVATE_V6 if ip.lower().startswith("fdaa") else IpFamily.V6
        else:
            family = IpFamily.SHARED_V4 if data.get("shared") else IpFamily.V4
        if family is IpFamily.PRIVATE_V6:
            region = None
        return cls(ip=ip, family=family, region=region)


@dataclass(frozen=True)
class SecretKey:
    """Name of a stored secret. Values are write-only and never read back."""
    name: str
    digest: Optional[str] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "SecretKey":
        return cls(name=data["name"], digest=data.get("digest"))


class DesiredSecretSet:
    """Target secret state for a single reconciliation.

    Holds name -> value pairs for the duration of one call. Values are never
    part of ``repr``/``str`` and the set refuses to be pickled or copied.
    ``clear`` drops every value.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = {}
        for name, value in (values or {}).items():
            self.add(name, value)

    def add(self, name: str, value: str) -> None:
        validate_identifier("secret name", name)
        if not isinstance(value, str) or value == "":
            raise InvalidInputError(f"Secret '{name}' has an empty value")
        self._values[name] = value

    def names(self) -> List[str]:
        return list(self._values)

    def items(self) -> Iterator:
        return iter(list(self._values.items()))

    def clear(self) -> None:
        self._values.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"DesiredSecretSet(names={self.names()!r})"

    __str__ = __repr__

    def __reduce_ex__(self, protocol):
        raise TypeError("DesiredSecretSet cannot be serialized")


@dataclass(frozen=True)
class SecretOutcome:
    name: str
    action: str  # "remove" or "upsert"
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ReconcileResult:
    """Per-key outcomes of one reconciliation, in the order they were applied."""
    app_name: str
    outcomes: List[SecretOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [o.name for o in self.outcomes if o.ok]

    @property
    def failed(self) -> Dict[str, str]:
        return {o.name: o.error for o in self.outcomes if not o.ok}

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app_name": self.app_name,
            "outcomes": [
                {"name": o.name, "action": o.action, "ok": o.ok, "error": o.error}
                for o in self.outcomes
            ],
        }
