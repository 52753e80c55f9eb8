"""Tests for secret reconciliation: ordering, per-key failures and value hygiene."""
import copy
import logging
import pickle
from unittest import mock

import pytest

from agent_flytoolkit.fleet.domains.errors import ApiError, InvalidInputError, UnavailableError
from agent_flytoolkit.fleet.domains.models import DesiredSecretSet
from agent_flytoolkit.fleet.workflows.retry import NO_RETRY
from agent_flytoolkit.fleet.workflows.secret_reconciler import SecretReconciler


@pytest.fixture
def reconciler(client, retry_policy):
    return SecretReconciler(client, retry_policy)


def _secret_calls(fake_api):
    return [(method, path) for method, path, _, _ in fake_api.calls if "/secrets/" in path]


class TestDesiredSecretSet:
    """Tests for the in-memory desired set."""

    def test_repr_shows_names_only(self):
        desired = DesiredSecretSet({"DB_PASS": "hunter2"})
        assert "hunter2" not in repr(desired)
        assert "hunter2" not in str(desired)
        assert "DB_PASS" in repr(desired)

    def test_cannot_be_pickled_or_copied(self):
        desired = DesiredSecretSet({"DB_PASS": "hunter2"})
        with pytest.raises(TypeError):
            pickle.dumps(desired)
        with pytest.raises(TypeError):
            copy.copy(desired)

    def test_rejects_empty_value(self):
        with pytest.raises(InvalidInputError) as exc_info:
            DesiredSecretSet({"DB_PASS": ""})
        assert "DB_PASS" in str(exc_info.value)

    def test_rejects_invalid_name(self):
        with pytest.raises(InvalidInputError):
            DesiredSecretSet({"db/pass": "x"})

    def test_clear_drops_values(self):
        desired = DesiredSecretSet({"A": "x", "B": "y"})
        desired.clear()
        assert len(desired) == 0
        assert list(desired.items()) == []


class TestSecretReconciler:
    """Tests for SecretReconciler.reconcile and upsert."""

    def test_removals_before_upserts(self, reconciler, fake_api):
        """Desired {A, B} against remote {A, C}: remove C, then upsert A and B."""
        fake_api.secrets["app1"] = {"A": "old", "C": "stale"}

        result = reconciler.reconcile("app1", DesiredSecretSet({"A": "x", "B": "y"}))

        assert _secret_calls(fake_api) == [
            ("DELETE", "/apps/app1/secrets/C"),
            ("POST", "/apps/app1/secrets/A"),
            ("POST", "/apps/app1/secrets/B"),
        ]
        assert result.ok
        assert [(o.name, o.action) for o in result.outcomes] == [
            ("C", "remove"), ("A", "upsert"), ("B", "upsert"),
        ]
        assert fake_api.secrets["app1"] == {"A": "x", "B": "y"}

    def test_upsert_never_removes(self, reconciler, fake_api):
        fake_api.secrets["app1"] = {"bar-unrelated": "keep"}

        result = reconciler.upsert("app1", DesiredSecretSet({"foo": "bar"}))

        assert result.succeeded == ["foo"]
        assert fake_api.calls_to("DELETE") == []
        assert fake_api.calls_to("GET") == []
        assert fake_api.secrets["app1"] == {"bar-unrelated": "keep", "foo": "bar"}

    def test_per_key_failure_is_aggregated(self, reconciler, fake_api):
        fake_api.fail("POST", "/apps/app1/secrets/A", 400, body={"error": "rejected"})

        result = reconciler.reconcile("app1", DesiredSecretSet({"A": "x", "B": "y"}))

        assert not result.ok
        assert list(result.failed) == ["A"]
        assert result.succeeded == ["B"]
        assert fake_api.secrets["app1"] == {"B": "y"}

    def test_transient_upsert_is_retried(self, reconciler, fake_api):
        fake_api.fail("POST", "/apps/app1/secrets/A", 503, times=2)

        result = reconciler.upsert("app1", DesiredSecretSet({"A": "x"}))

        assert result.ok
        assert len(fake_api.calls_to("POST", "/apps/app1/secrets/A")) == 3

    def test_exhausted_retries_reported_per_key(self, reconciler, fake_api):
        fake_api.fail("DELETE", "/apps/app1/secrets/C", 503, times=3)
        fake_api.secrets["app1"] = {"C": "stale"}

        result = reconciler.reconcile("app1", DesiredSecretSet({"A": "x"}))

        assert list(result.failed) == ["C"]
        assert result.succeeded == ["A"]

    def test_remove_of_already_absent_key_succeeds(self, reconciler, fake_api):
        fake_api.secrets["app1"] = {"C": "stale"}
        fake_api.fail("DELETE", "/apps/app1/secrets/C", 404)

        result = reconciler.reconcile("app1", DesiredSecretSet({"A": "x"}))

        assert result.ok

    def test_listing_failure_touches_nothing(self, reconciler, fake_api):
        fake_api.fail("GET", "/apps/app1/secrets", 503, times=3)
        desired = DesiredSecretSet({"A": "x"})

        with pytest.raises(UnavailableError):
            reconciler.reconcile("app1", desired)
        assert fake_api.calls_to("POST") == []
        assert len(desired) == 0

    def test_desired_set_cleared_after_reconcile(self, reconciler):
        desired = DesiredSecretSet({"A": "x"})
        reconciler.reconcile("app1", desired)
        assert len(desired) == 0

    def test_invalid_app_name_makes_no_call(self, reconciler, fake_api):
        with pytest.raises(InvalidInputError):
            reconciler.reconcile("app 1", DesiredSecretSet({"A": "x"}))
        assert fake_api.calls == []

    def test_value_never_in_results_or_logs(self, reconciler, fake_api, caplog):
        """Even an error body echoing the value must not leak it."""
        fake_api.fail("POST", "/apps/app1/secrets/A", 418, body={"error": "refused s3cr3t-value"})
        fake_api.secrets["app1"] = {"C": "stale"}

        with caplog.at_level(logging.DEBUG):
            result = reconciler.reconcile(
                "app1", DesiredSecretSet({"A": "s3cr3t-value", "B": "other-s3cr3t"})
            )

        assert not result.ok
        rendered = f"{result!r} {result.to_dict()} {result.failed}"
        assert "s3cr3t-value" not in rendered
        assert "other-s3cr3t" not in rendered
        assert "s3cr3t-value" not in caplog.text
        assert "other-s3cr3t" not in caplog.text

    def test_value_scrubbed_from_error_text(self):
        """Errors raised below the client (e.g. by a transport) are scrubbed too."""
        client = mock.Mock()
        client.secrets.put.side_effect = ApiError("upstream rejected hunter2")
        reconciler = SecretReconciler(client, NO_RETRY)

        result = reconciler.upsert("app1", DesiredSecretSet({"DB_PASS": "hunter2"}))

        assert result.failed == {"DB_PASS": "upstream rejected [REDACTED]"}
