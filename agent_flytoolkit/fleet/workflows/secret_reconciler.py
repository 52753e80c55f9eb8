"""Workflow for reconciling an app's secrets against a desired set.

Secret values are write-only on the platform, so only keys can be diffed:
keys present remotely but not desired are removed, and every desired key is
upserted (setting the same value twice is harmless). Removals run before
upserts. Values never reach logs, results or exceptions.
"""
import logging
from typing import List, Optional

from ..domains.errors import FlyError, NotFoundError
from ..domains.fly_client import FlyClient
from ..domains.models import DesiredSecretSet, ReconcileResult, SecretOutcome
from ..domains.validation import validate_identifier
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


def _scrub(message: str, value: str) -> str:
    return message.replace(value, REDACTED) if value else message


class SecretReconciler:
    """Applies a DesiredSecretSet to one app, key by key."""

    def __init__(self, client: FlyClient, retry_policy: Optional[RetryPolicy] = None):
        self._client = client
        self._retry = retry_policy or RetryPolicy()

    def plan_removals(self, app_name: str, desired: DesiredSecretSet) -> List[str]:
        """Keys that exist remotely but are absent from the desired set."""
        remote = self._retry.call(
            lambda: self._client.secrets.list(app_name),
            f"listing secrets of '{app_name}'",
        )
        return sorted({key.name for key in remote} - set(desired.names()))

    def reconcile(self, app_name: str, desired: DesiredSecretSet, prune: bool = True) -> ReconcileResult:
        """
        Make the app's secret keys equal the desired set.

        Args:
            app_name: App owning the secrets
            desired: Target name -> value pairs; cleared before returning
            prune: If False, only upsert the desired keys and never remove anything

        Returns:
            ReconcileResult listing every key touched and whether it succeeded

        Raises:
            InvalidInputError: If the app name is invalid
            FlyError: If listing the current keys failed (no key was touched)
        """
        try:
            validate_identifier("app name", app_name)
            result = ReconcileResult(app_name=app_name)
            removals = self.plan_removals(app_name, desired) if prune else []
            logger.info(
                f"Reconciling secrets of '{app_name}': remove {removals}, upsert {desired.names()}"
            )

            for name in removals:
                result.outcomes.append(self._remove(app_name, name))
            for name, value in desired.items():
                result.outcomes.append(self._upsert(app_name, name, value))

            if not result.ok:
                logger.warning(f"Secret reconciliation of '{app_name}' failed for {sorted(result.failed)}")
            return result
        finally:
            desired.clear()

    def upsert(self, app_name: str, desired: DesiredSecretSet) -> ReconcileResult:
        """Set the given keys without touching any other secret of the app."""
        return self.reconcile(app_name, desired, prune=False)

    def _remove(self, app_name: str, name: str) -> SecretOutcome:
        try:
            self._retry.call(
                lambda: self._delete_if_present(app_name, name),
                f"removing secret '{name}' from '{app_name}'",
            )
        except FlyError as e:
            logger.warning(f"Failed to remove secret '{name}' from '{app_name}': {e}")
            return SecretOutcome(name=name, action="remove", error=str(e))
        return SecretOutcome(name=name, action="remove")

    def _delete_if_present(self, app_name: str, name: str) -> None:
        try:
            self._client.secrets.delete(app_name, name)
        except NotFoundError:
            logger.debug(f"Secret '{name}' of '{app_name}' already absent")

    def _upsert(self, app_name: str, name: str, value: str) -> SecretOutcome:
        try:
            self._retry.call(
                lambda: self._client.secrets.put(app_name, name, value),
                f"setting secret '{name}' on '{app_name}'",
            )
        except FlyError as e:
            error = _scrub(str(e), value)
            logger.warning(f"Failed to set secret '{name}' on '{app_name}': {error}")
            return SecretOutcome(name=name, action="upsert", error=error)
        return SecretOutcome(name=name, action="upsert")
