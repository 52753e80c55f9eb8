"""Shared fixtures: an in-memory stand-in for the Fly Machines API."""
import itertools
import json

import pytest

from agent_flytoolkit.fleet.domains.fly_client import FlyClient
from agent_flytoolkit.fleet.domains.transport import TransportResponse
from agent_flytoolkit.fleet.workflows.operations import FlyOperations
from agent_flytoolkit.fleet.workflows.retry import RetryPolicy
from agent_flytoolkit.fleet.workflows.waiter import ConvergenceWaiter


def _response(status, body=None):
    return TransportResponse(status=status, body=body, text=json.dumps(body) if body is not None else "")


class FakeFlyApi:
    """Implements the Transport protocol against in-memory state.

    Machine state changes are asynchronous like on the real platform: a
    create or start queues the states the machine walks through, and each
    GET of the machine advances it by one step.
    """

    def __init__(self):
        self.apps = {}
        self.machines = {}
        self.progress = {}
        self.volumes = {}
        self.ips = {}
        self.secrets = {}
        self.calls = []
        self.headers = []
        self.faults = []
        self.start_script = ["starting", "started"]
        self.stop_script = ["stopping", "stopped"]
        self._ids = itertools.count(1)

    # Test helpers

    def add_app(self, name, org_slug="personal"):
        self.apps[name] = {"id": f"app-{next(self._ids)}", "name": name,
                           "organization": {"slug": org_slug}, "status": "deployed"}
        self.secrets.setdefault(name, {})
        self.ips.setdefault(name, [])
        return self.apps[name]

    def fail(self, method, path, status, times=1, body=None):
        """Answer the next ``times`` matching requests with ``status``."""
        self.faults.append({"method": method, "path": path, "status": status,
                            "remaining": times, "body": body})

    def calls_to(self, method, prefix=""):
        return [call for call in self.calls if call[0] == method and call[1].startswith(prefix)]

    # Transport protocol

    def request(self, method, path, headers=None, json_body=None, params=None):
        self.calls.append((method, path, json_body, params))
        self.headers.append(headers)
        for fault in self.faults:
            if fault["remaining"] > 0 and fault["method"] == method and fault["path"] == path:
                fault["remaining"] -= 1
                if fault["status"] is None:
                    return TransportResponse(status=200, body=None, text="<html>")
                return _response(fault["status"], fault["body"] or {"error": "injected failure"})

        parts = path.strip("/").split("/")
        if parts == ["apps"]:
            return self._apps_collection(method, json_body, params)
        if parts[0] != "apps" or len(parts) < 2:
            return _response(404, {"error": "not found"})
        app = parts[1]
        if app not in self.apps:
            return _response(404, {"error": f"app {app} not found"})
        if len(parts) == 2:
            return self._app(method, app)

        kind, rest = parts[2], parts[3:]
        handler = {
            "machines": self._machines,
            "volumes": self._volumes,
            "ip_assignments": self._ips,
            "secrets": self._secrets,
        }.get(kind)
        if handler is None:
            return _response(404, {"error": "not found"})
        return handler(method, app, rest, json_body, params)

    def _apps_collection(self, method, json_body, params):
        if method == "GET":
            org = (params or {}).get("org_slug")
            apps = [a for a in self.apps.values() if a["organization"]["slug"] == org]
            return _response(200, {"apps": apps, "total_apps": len(apps)})
        name = json_body["app_name"]
        if name in self.apps:
            return _response(422, {"error": "Validation failed: Name has already been taken"})
        app = self.add_app(name, json_body["org_slug"])
        return _response(201, {"id": app["id"], "created_at": 0})

    def _app(self, method, app):
        if method == "GET":
            return _response(200, self.apps[app])
        del self.apps[app]
        return _response(202)

    def _machines(self, method, app, rest, json_body, params):
        if not rest:
            if method == "GET":
                return _response(200, [m for (a, _), m in self.machines.items() if a == app])
            for (a, _), machine in self.machines.items():
                if a == app and machine["name"] == json_body["name"]:
                    return _response(409, {"error": (
                        f"already_exists: unique machine name violation, machine ID {machine['id']} "
                        f"already exists with name \"{machine['name']}\""
                    )})
            machine_id = f"m{next(self._ids):04d}"
            machine = {"id": machine_id, "name": json_body["name"], "state": "created",
                       "region": json_body.get("region", "ams"), "config": json_body["config"],
                       "instance_id": "01H", "host_status": "ok"}
            self.machines[(app, machine_id)] = machine
            if json_body.get("skip_launch"):
                self.progress[machine_id] = ["stopped"]
            else:
                self.progress[machine_id] = list(self.start_script)
            return _response(200, dict(machine))

        machine_id = rest[0]
        machine = self.machines.get((app, machine_id))
        if machine is None:
            return _response(404, {"error": "machine not found"})
        action = rest[1] if len(rest) > 1 else None

        if action is None and method == "GET":
            queued = self.progress.get(machine_id)
            if queued:
                machine["state"] = queued.pop(0)
            return _response(200, dict(machine))
        if action is None and method == "POST":
            machine["config"] = json_body["config"]
            return _response(200, dict(machine))
        if action is None and method == "DELETE":
            del self.machines[(app, machine_id)]
            return _response(200, {"ok": True})
        if action == "start":
            self.progress[machine_id] = list(self.start_script)
            return _response(200, {"previous_state": machine["state"]})
        if action == "stop":
            self.progress[machine_id] = list(self.stop_script)
            return _response(200, {"ok": True})
        if action == "exec":
            return _response(200, {"exit_code": 0, "stdout": "hello\n"})
        return _response(200, {"ok": True})

    def _volumes(self, method, app, rest, json_body, params):
        if not rest:
            if method == "GET":
                return _response(200, [v for (a, _), v in self.volumes.items() if a == app])
            volume_id = f"vol_{next(self._ids):04d}"
            volume = {"id": volume_id, "name": json_body["name"], "state": "created",
                      "size_gb": json_body["size_gb"], "region": json_body["region"],
                      "zone": "a1b2", "encrypted": json_body.get("encrypted", True)}
            self.volumes[(app, volume_id)] = volume
            return _response(200, dict(volume))

        volume = self.volumes.get((app, rest[0]))
        if volume is None:
            return _response(404, {"error": "volume not found"})
        if method == "GET":
            return _response(200, dict(volume))
        if method == "PUT":
            volume["size_gb"] = json_body["size_gb"]
            return _response(200, {"volume": dict(volume), "needs_restart": False})
        volume["state"] = "destroyed"
        return _response(200, dict(volume))

    def _ips(self, method, app, rest, json_body, params):
        assigned = self.ips[app]
        if method == "GET":
            return _response(200, {"ips": list(assigned)})
        if method == "POST":
            family = json_body["type"]
            n = next(self._ids)
            if family == "private_v6":
                ip = f"fdaa:0:1::{n}"
            elif family == "v6":
                ip = f"2a09:8280:1::{n}"
            else:
                ip = f"66.241.124.{n}"
            assigned.append({"ip": ip, "region": json_body.get("region", "global"),
                             "shared": family == "shared_v4"})
            return _response(200, {"ip": ip})
        for entry in assigned:
            if entry["ip"] == rest[0]:
                assigned.remove(entry)
                return _response(204)
        return _response(404, {"error": "ip not found"})

    def _secrets(self, method, app, rest, json_body, params):
        stored = self.secrets.setdefault(app, {})
        if method == "GET":
            return _response(200, {"secrets": [{"name": n, "digest": f"d-{n}"} for n in stored]})
        name = rest[0]
        if method == "POST":
            stored[name] = json_body["value"]
            return _response(200, {"name": name, "digest": f"d-{name}"})
        if name not in stored:
            return _response(404, {"error": "secret not found"})
        del stored[name]
        return _response(200, {})


@pytest.fixture
def fake_api():
    """Fake Machines API with one app, 'app1', owned by 'personal'."""
    api = FakeFlyApi()
    api.add_app("app1")
    return api


@pytest.fixture
def client(fake_api):
    return FlyClient("test-token", transport=fake_api)


@pytest.fixture
def sleeps():
    """Records every delay instead of sleeping."""
    return []


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(attempts=3, initial_delay=0.01, max_delay=0.05, sleep=sleeps.append)


@pytest.fixture
def waiter(sleeps):
    return ConvergenceWaiter(initial_delay=0.01, max_delay=0.05, timeout=30.0, max_polls=10, sleep=sleeps.append)


@pytest.fixture
def operations(client, waiter, retry_policy):
    return FlyOperations(client, waiter=waiter, retry_policy=retry_policy)
