"""Operations exposed to callers: one method per intent.

Every operation validates its identifiers before any remote call, composes
the Fly client with the convergence waiter and the secret reconciler, and
surfaces failures through the error taxonomy. Calls with asynchronous
effects (machine create/start/stop/delete) only return once the machine
has reached the expected state.
"""
import logging
import threading
from typing import Callable, List, Optional, TypeVar

from ..domains.errors import InvalidInputError, NotFoundError
from ..domains.fly_client import FlyClient
from ..domains.models import (
    App,
    DesiredSecretSet,
    ExecResult,
    IpAssignment,
    IpRequest,
    Machine,
    MachineConfig,
    MachineState,
    ReconcileResult,
    SecretKey,
    Volume,
    VolumeCreateRequest,
)
from ..domains.validation import validate_identifier, validate_ip_address, validate_positive
from .retry import NO_RETRY, RetryPolicy
from .secret_reconciler import SecretReconciler
from .waiter import ConvergenceWaiter

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _ignore_not_found(func: Callable[[], None]) -> Callable[[], None]:
    """Deletes are idempotent: an already absent resource counts as deleted."""
    def wrapper() -> None:
        try:
            func()
        except NotFoundError:
            logger.info("Resource already absent, treating delete as done")
    return wrapper


class _Group:
    def __init__(self, ops: "FlyOperations"):
        self._ops = ops
        self._client = ops.client

    def _run(self, func: Callable[[], T], description: str, idempotent: bool = True) -> T:
        policy = self._ops.retry_policy if idempotent else NO_RETRY
        return policy.call(func, description)


class AppOperations(_Group):
    def list(self, org_slug: str) -> List[App]:
        validate_identifier("org slug", org_slug)
        return self._run(lambda: self._client.apps.list(org_slug), f"listing apps of '{org_slug}'")

    def get(self, app_name: str) -> App:
        validate_identifier("app name", app_name)
        return self._run(lambda: self._client.apps.get(app_name), f"getting app '{app_name}'")

    def put(self, org_slug: str, app_name: str) -> App:
        """Create the app, or return it if it already exists in the same org."""
        validate_identifier("org slug", org_slug)
        validate_identifier("app name", app_name)
        return self._run(lambda: self._client.apps.create(org_slug, app_name), f"creating app '{app_name}'")

    def delete(self, app_name: str, force: bool = False) -> None:
        validate_identifier("app name", app_name)
        self._run(
            _ignore_not_found(lambda: self._client.apps.delete(app_name, force=force)),
            f"deleting app '{app_name}'",
        )


class MachineOperations(_Group):
    def list(self, app_name: str) -> List[Machine]:
        validate_identifier("app name", app_name)
        return self._run(lambda: self._client.machines.list(app_name), f"listing machines of '{app_name}'")

    def get(self, app_name: str, machine_id: str) -> Machine:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        return self._run(
            lambda: self._client.machines.get(app_name, machine_id),
            f"getting machine '{machine_id}' of '{app_name}'",
        )

    def _wait_for_state(self, app_name: str, machine_id: str, target: MachineState,
                        cancel_event: Optional[threading.Event]) -> Machine:
        return self._ops.waiter.wait_for(
            lambda: self._client.machines.get(app_name, machine_id),
            lambda machine: machine.state is target,
            f"machine '{machine_id}' of '{app_name}' to be {target.value}",
            cancel_event=cancel_event,
        )

    def create(self, app_name: str, machine_name: str, config: MachineConfig,
               region: Optional[str] = None, start: bool = True,
               cancel_event: Optional[threading.Event] = None) -> Machine:
        """
        Create a machine and wait until it is started (or stopped when start=False).

        Returns:
            The machine as observed once it reached the target state

        Raises:
            ConvergenceTimeoutError: If the machine did not converge in time
            OperationCancelledError: If ``cancel_event`` was set; only this wait is aborted
        """
        validate_identifier("app name", app_name)
        validate_identifier("machine name", machine_name)
        if not isinstance(config, MachineConfig) or not config.image:
            raise InvalidInputError("Machine config requires an image")
        if region:
            validate_identifier("region", region)

        machine_id = self._run(
            lambda: self._client.machines.create(app_name, machine_name, config,
                                                 region=region, skip_launch=not start),
            f"creating machine '{machine_name}' in '{app_name}'",
        )
        logger.info(f"Machine '{machine_name}' of '{app_name}' has id {machine_id}, waiting for it")
        target = MachineState.STARTED if start else MachineState.STOPPED
        return self._wait_for_state(app_name, machine_id, target, cancel_event)

    def update(self, app_name: str, machine_id: str, config: MachineConfig,
               region: Optional[str] = None) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        if not isinstance(config, MachineConfig) or not config.image:
            raise InvalidInputError("Machine config requires an image")
        self._run(
            lambda: self._client.machines.update(app_name, machine_id, config, region=region),
            f"updating machine '{machine_id}' of '{app_name}'",
        )

    def start(self, app_name: str, machine_id: str,
              cancel_event: Optional[threading.Event] = None) -> Machine:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        self._run(lambda: self._client.machines.start(app_name, machine_id), f"starting machine '{machine_id}'")
        return self._wait_for_state(app_name, machine_id, MachineState.STARTED, cancel_event)

    def stop(self, app_name: str, machine_id: str,
             cancel_event: Optional[threading.Event] = None) -> Machine:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        self._run(lambda: self._client.machines.stop(app_name, machine_id), f"stopping machine '{machine_id}'")
        return self._wait_for_state(app_name, machine_id, MachineState.STOPPED, cancel_event)

    def suspend(self, app_name: str, machine_id: str) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        self._run(lambda: self._client.machines.suspend(app_name, machine_id), f"suspending machine '{machine_id}'")

    def restart(self, app_name: str, machine_id: str) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        self._run(lambda: self._client.machines.restart(app_name, machine_id), f"restarting machine '{machine_id}'")

    def exec(self, app_name: str, machine_id: str, command: List[str]) -> ExecResult:
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        if not command:
            raise InvalidInputError("Command cannot be empty")
        return self._run(
            lambda: self._client.machines.exec(app_name, machine_id, command),
            f"running command on machine '{machine_id}'",
            idempotent=False,
        )

    def delete(self, app_name: str, machine_id: str, force: bool = False,
               cancel_event: Optional[threading.Event] = None) -> None:
        """
        Destroy a machine. Without ``force`` the call returns once the platform
        no longer reports the machine (or reports it destroyed).
        """
        validate_identifier("app name", app_name)
        validate_identifier("machine id", machine_id)
        self._run(
            _ignore_not_found(lambda: self._client.machines.delete(app_name, machine_id, force=force)),
            f"deleting machine '{machine_id}' of '{app_name}'",
        )
        if force:
            return

        def poll() -> Optional[Machine]:
            try:
                return self._client.machines.get(app_name, machine_id)
            except NotFoundError:
                return None

        self._ops.waiter.wait_for(
            poll,
            lambda machine: machine is None or machine.state is MachineState.DESTROYED,
            f"machine '{machine_id}' of '{app_name}' to be destroyed",
            cancel_event=cancel_event,
        )


class VolumeOperations(_Group):
    def list(self, app_name: str) -> List[Volume]:
        validate_identifier("app name", app_name)
        return self._run(lambda: self._client.volumes.list(app_name), f"listing volumes of '{app_name}'")

    def get(self, app_name: str, volume_id: str) -> Volume:
        validate_identifier("app name", app_name)
        validate_identifier("volume id", volume_id)
        return self._run(
            lambda: self._client.volumes.get(app_name, volume_id),
            f"getting volume '{volume_id}' of '{app_name}'",
        )

    def create(self, app_name: str, name: str, region: str, size_gb: int,
               encrypted: Optional[bool] = None) -> Volume:
        validate_identifier("app name", app_name)
        validate_identifier("volume name", name)
        validate_identifier("region", region)
        validate_positive("size_gb", size_gb)
        request = VolumeCreateRequest(name=name, region=region.lower(), size_gb=size_gb, encrypted=encrypted)
        return self._run(
            lambda: self._client.volumes.create(app_name, request),
            f"creating volume '{name}' in '{app_name}'",
            idempotent=False,
        )

    def extend(self, app_name: str, volume_id: str, size_gb: int) -> None:
        validate_identifier("app name", app_name)
        validate_identifier("volume id", volume_id)
        validate_positive("size_gb", size_gb)
        self._run(
            lambda: self._client.volumes.extend(app_name, volume_id, size_gb),
            f"extending volume '{volume_id}' of '{app_name}'",
        )

    def delete(self, app_name: str, volume_id: str) -> None:
        """
        Delete a volume.

        Raises:
            NotFoundError: If the platform has never heard of the volume id
        """
        validate_identifier("app name", app_name)
        validate_identifier("volume id", volume_id)
        volume = self.get(app_name, volume_id)
        if volume.is_destroyed:
            logger.info(f"Volume '{volume_id}' of '{app_name}' is already {volume.state}")
            return
        self._run(
            _ignore_not_found(lambda: self._client.volumes.delete(app_name, volume_id)),
            f"deleting volume '{volume_id}' of '{app_name}'",
        )


class IpOperations(_Group):
    def list(self, app_name: str) -> List[IpAssignment]:
        validate_identifier("app name", app_name)
        return self._run(lambda: self._client.ips.list(app_name), f"listing IPs of '{app_name}'")

    def allocate(self, app_name: str, request: IpRequest) -> str:
        validate_identifier("app name", app_name)
        if not isinstance(request, IpRequest):
            raise InvalidInputError("IP allocation requires an IpRequest")
        if request.region:
            validate_identifier("region", request.region)
        return self._run(
            lambda: self._client.ips.allocate(app_name, request),
            f"allocating {request.family.value} IP for '{app_name}'",
            idempotent=False,
        )

    def release(self, app_name: str, ip: str) -> None:
        validate_identifier("app name", app_name)
        validate_ip_address(ip)
        self._run(
            _ignore_not_found(lambda: self._client.ips.release(app_name, ip)),
            f"releasing IP {ip} of '{app_name}'",
        )


class SecretOperations(_Group):
    def list(self, app_name: str) -> List[SecretKey]:
        validate_identifier("app name", app_name)
        return self._run(lambda: self._client.secrets.list(app_name), f"listing secrets of '{app_name}'")

    def reconcile(self, app_name: str, desired: DesiredSecretSet, prune: bool = True) -> ReconcileResult:
        """Make the app's secret keys match ``desired``; see SecretReconciler.reconcile."""
        if not isinstance(desired, DesiredSecretSet):
            raise InvalidInputError("Secrets must be passed as a DesiredSecretSet")
        return self._ops.reconciler.reconcile(app_name, desired, prune=prune)

    def upsert(self, app_name: str, desired: DesiredSecretSet) -> ReconcileResult:
        return self.reconcile(app_name, desired, prune=False)


class FlyOperations:
    """Entry point grouping every operation by resource kind."""

    def __init__(self, client: FlyClient, waiter: Optional[ConvergenceWaiter] = None,
                 reconciler: Optional[SecretReconciler] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.waiter = waiter or ConvergenceWaiter()
        self.reconciler = reconciler or SecretReconciler(client, self.retry_policy)
        self.apps = AppOperations(self)
        self.machines = MachineOperations(self)
        self.volumes = VolumeOperations(self)
        self.ips = IpOperations(self)
        self.secrets = SecretOperations(self)
