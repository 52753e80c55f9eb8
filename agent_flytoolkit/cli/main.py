"""CLI entrypoint for agent-flytoolkit."""
import sys
import json
import argparse
import logging
from dataclasses import asdict, is_dataclass

from agent_flytoolkit.fleet.domains.errors import ConfigError, FlyError, InvalidInputError

from .validators import require, validate_name, validate_secret_value

VERSION = "0.1.0"
DEFAULT_WAIT_TIMEOUT = 120.0

# Configure logging to stderr
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    stream=sys.stderr
)
logger = logging.getLogger(__name__)


def _print_json(value):
    if is_dataclass(value):
        value = asdict(value)
    elif isinstance(value, list):
        value = [asdict(item) if is_dataclass(item) else item for item in value]
    print(json.dumps(value, indent=2, default=str))


def _load_settings(args):
    from agent_flytoolkit.fleet.domains.config_loader import load_settings

    return load_settings(getattr(args, "config", None))


def _build_operations(args, settings):
    """Create the operations entry point from settings (token resolved once here)."""
    from agent_flytoolkit.fleet.domains.credentials import resolve_api_token
    from agent_flytoolkit.fleet.domains.fly_client import FlyClient
    from agent_flytoolkit.fleet.workflows.operations import FlyOperations
    from agent_flytoolkit.fleet.workflows.waiter import ConvergenceWaiter

    token = resolve_api_token(settings)
    client = FlyClient(token, base_url=settings.api_base_url)
    timeout = getattr(args, "timeout", None)
    if timeout is None:
        timeout = DEFAULT_WAIT_TIMEOUT
    elif timeout < 0:
        raise InvalidInputError(f"--timeout must not be negative, got {timeout}")
    waiter = ConvergenceWaiter(timeout=timeout)
    return FlyOperations(client, waiter=waiter)


def _app_name(args, settings) -> str:
    return require("app name", getattr(args, "app", None) or settings.app_name, "--app")


def cmd_version(args):
    """Show version information."""
    print(f"agent-flytoolkit {VERSION}")


def cmd_config_show(args):
    """Show the resolved configuration (never the token)."""
    settings = _load_settings(args)
    shown = asdict(settings)
    print(json.dumps(shown, indent=2))


def cmd_apps_list(args):
    settings = _load_settings(args)
    org_slug = require("org slug", args.org or settings.org_slug, "--org")
    _print_json(_build_operations(args, settings).apps.list(org_slug))


def cmd_apps_put(args):
    settings = _load_settings(args)
    org_slug = require("org slug", args.org or settings.org_slug, "--org")
    app_name = _app_name(args, settings)
    _print_json(_build_operations(args, settings).apps.put(org_slug, app_name))


def cmd_apps_delete(args):
    settings = _load_settings(args)
    app_name = _app_name(args, settings)
    _build_operations(args, settings).apps.delete(app_name, force=args.force)
    print(f"App '{app_name}' deleted")


def cmd_machines_list(args):
    settings = _load_settings(args)
    _print_json(_build_operations(args, settings).machines.list(_app_name(args, settings)))


def cmd_machines_get(args):
    settings = _load_settings(args)
    validate_name("machine id", args.machine_id)
    _print_json(_build_operations(args, settings).machines.get(_app_name(args, settings), args.machine_id))


def _read_machine_config(path, settings):
    from agent_flytoolkit.fleet.domains.models import MachineConfig

    data = {}
    if path:
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidInputError(f"Failed to read machine config {path}: {e}")
    if not isinstance(data, dict):
        raise InvalidInputError("Machine config must be a JSON object")
    if not data.get("image") and settings.image:
        data["image"] = settings.image
    return MachineConfig.from_api(data)


def cmd_machines_create(args):
    settings = _load_settings(args)
    app_name = _app_name(args, settings)
    validate_name("machine name", args.name)
    config = _read_machine_config(args.machine_config, settings)
    region = args.region or settings.region
    machine = _build_operations(args, settings).machines.create(
        app_name, args.name, config, region=region, start=not args.no_start
    )
    _print_json(machine)


def cmd_machines_delete(args):
    settings = _load_settings(args)
    app_name = _app_name(args, settings)
    validate_name("machine id", args.machine_id)
    _build_operations(args, settings).machines.delete(app_name, args.machine_id, force=args.force)
    print(f"Machine '{args.machine_id}' deleted")


def cmd_machines_start(args):
    settings = _load_settings(args)
    validate_name("machine id", args.machine_id)
    _print_json(_build_operations(args, settings).machines.start(_app_name(args, settings), args.machine_id))


def cmd_machines_stop(args):
    settings = _load_settings(args)
    validate_name("machine id", args.machine_id)
    _print_json(_build_operations(args, settings).machines.stop(_app_name(args, settings), args.machine_id))


def cmd_volumes_list(args):
    settings = _load_settings(args)
    _print_json(_build_operations(args, settings).volumes.list(_app_name(args, settings)))


def cmd_volumes_create(args):
    settings = _load_settings(args)
    app_name = _app_name(args, settings)
    validate_name("volume name", args.name)
    region = require("region", args.region or settings.region, "--region")
    _print_json(_build_operations(args, settings).volumes.create(app_name, args.name, region, args.size_gb))


def cmd_volumes_delete(args):
    settings = _load_settings(args)
    app_name = _app_name(args, settings)
    validate_name("volume id", args.volume_id)
    _build_operations(args, settings).volumes.delete(app_name, args.volume_id)
    print(f"Volume '{args.volume_id}' deleted")


def cmd_ips_list(args):
    settings = _load_settings(args)
    _print_json(_build_operations(args, settings).ips.list(_app_name(args, settings)))


def cmd_ips_allocate(args):
    from agent_flytoolkit.fleet.domains.models import IpFamily, IpRequest

    settings = _load_settings(args)
    app_name = _app_name(args, settings)
    request = IpRequest(family=IpFamily(args.type), region=args.region)
    print(_build_operations(args, settings).ips.allocate(app_name, request))


def cmd_ips_release(args):
    settings = _load_settings(args)
    app_name = _app_name(args, settings)
    _build_operations(args, settings).ips.release(app_name, args.ip)
    print(f"IP {args.ip} released")


def cmd_secrets_list(args):
    settings = _load_settings(args)
    _print_json(_build_operations(args, settings).secrets.list(_app_name(args, settings)))


def cmd_secrets_set(args):
    """Set one secret; the value is read from stdin so it never lands in shell history."""
    from agent_flytoolkit.fleet.domains.models import DesiredSecretSet

    settings = _load_settings(args)
    app_name = _app_name(args, settings)
    validate_name("secret name", args.secret_name)
    value = sys.stdin.read().rstrip("\n")
    validate_secret_value(value)

    result = _build_operations(args, settings).secrets.upsert(app_name, DesiredSecretSet({args.secret_name: value}))
    del value
    _print_json(result.to_dict())
    if not result.ok:
        sys.exit(1)


def cmd_webhook_serve(args):
    """Serve the secret intake endpoint."""
    import uvicorn

    from agent_flytoolkit.fleet.workflows.secret_reconciler import SecretReconciler
    from agent_flytoolkit.webhook.app import create_app

    settings = _load_settings(args)
    operations = _build_operations(args, settings)
    reconciler = SecretReconciler(operations.client, operations.retry_policy)
    app = create_app(lambda: reconciler)

    host = args.host or settings.webhook_host
    port = args.port or settings.webhook_port
    logger.warning(f"Serving secret intake on http://{host}:{port}/")
    uvicorn.run(app, host=host, port=port, log_level="warning")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="flytoolkit",
        description="Agent-Flytoolkit CLI - manage Fly.io apps, machines, volumes, IPs and secrets",
        epilog="""
Exit codes:
  0 - Success
  1 - Runtime error (authentication, network, resource not found, timeout, etc.)
  2 - Usage error (invalid arguments, invalid name format, etc.)

Environment variables:
  FLY_API_TOKEN     - API token (variable name configurable)
  FLYTOOLKIT_CONFIG - Path to config file
  FLY_ORG, FLY_APP, FLY_IMAGE, FLY_REGION - override config values

Configuration:
  Default location: ~/.config/agent-flytoolkit/config.yml
        """
    )
    parser.add_argument("--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("version", help="Show version information")

    # config
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_subparsers.add_parser("show", help="Show resolved configuration")

    # apps
    apps_parser = subparsers.add_parser("apps", help="App operations")
    apps_subparsers = apps_parser.add_subparsers(dest="apps_command")
    apps_list = apps_subparsers.add_parser("list", help="List apps of an organization")
    apps_list.add_argument("--org", help="Organization slug")
    apps_put = apps_subparsers.add_parser("put", help="Create an app (idempotent)")
    apps_put.add_argument("--org", help="Organization slug")
    apps_put.add_argument("--app", help="App name")
    apps_delete = apps_subparsers.add_parser("delete", help="Delete an app")
    apps_delete.add_argument("--app", help="App name")
    apps_delete.add_argument("--force", action="store_true", help="Delete even with running machines")

    # machines
    machines_parser = subparsers.add_parser("machines", help="Machine operations")
    machines_parser.add_argument("--app", help="App name")
    machines_parser.add_argument("--timeout", type=float, help="Seconds to wait for convergence")
    machines_subparsers = machines_parser.add_subparsers(dest="machines_command")
    machines_subparsers.add_parser("list", help="List machines")
    machines_get = machines_subparsers.add_parser("get", help="Show one machine")
    machines_get.add_argument("machine_id")
    machines_create = machines_subparsers.add_parser(
        "create",
        help="Create a machine and wait for it",
        description="Create a machine and wait until it is started (or stopped with --no-start)."
    )
    machines_create.add_argument("name", help="Machine name")
    machines_create.add_argument("--machine-config", help="JSON file with the machine config")
    machines_create.add_argument("--region", help="Region, e.g. ams")
    machines_create.add_argument("--no-start", action="store_true", help="Create without starting")
    machines_delete = machines_subparsers.add_parser("delete", help="Destroy a machine")
    machines_delete.add_argument("machine_id")
    machines_delete.add_argument("--force", action="store_true", help="Destroy even if running")
    machines_start = machines_subparsers.add_parser("start", help="Start a machine and wait for it")
    machines_start.add_argument("machine_id")
    machines_stop = machines_subparsers.add_parser("stop", help="Stop a machine and wait for it")
    machines_stop.add_argument("machine_id")

    # volumes
    volumes_parser = subparsers.add_parser("volumes", help="Volume operations")
    volumes_parser.add_argument("--app", help="App name")
    volumes_subparsers = volumes_parser.add_subparsers(dest="volumes_command")
    volumes_subparsers.add_parser("list", help="List volumes")
    volumes_create = volumes_subparsers.add_parser("create", help="Create a volume")
    volumes_create.add_argument("name", help="Volume name")
    volumes_create.add_argument("--size-gb", type=int, default=1, help="Size in GB (default: 1)")
    volumes_create.add_argument("--region", help="Region, e.g. ams")
    volumes_delete = volumes_subparsers.add_parser("delete", help="Delete a volume")
    volumes_delete.add_argument("volume_id")

    # ips
    ips_parser = subparsers.add_parser("ips", help="IP address operations")
    ips_parser.add_argument("--app", help="App name")
    ips_subparsers = ips_parser.add_subparsers(dest="ips_command")
    ips_subparsers.add_parser("list", help="List allocated IPs")
    ips_allocate = ips_subparsers.add_parser("allocate", help="Allocate an IP")
    ips_allocate.add_argument("--type", choices=["v4", "shared_v4", "v6", "private_v6"], default="shared_v4")
    ips_allocate.add_argument("--region", help="Region (v4/v6 only)")
    ips_release = ips_subparsers.add_parser("release", help="Release an IP")
    ips_release.add_argument("ip")

    # secrets
    secrets_parser = subparsers.add_parser("secrets", help="Secret operations")
    secrets_parser.add_argument("--app", help="App name")
    secrets_subparsers = secrets_parser.add_subparsers(dest="secrets_command")
    secrets_subparsers.add_parser("list", help="List secret names (values are write-only)")
    secrets_set = secrets_subparsers.add_parser(
        "set",
        help="Set one secret, reading the value from stdin",
        description="Set one secret. The value is read from stdin and never printed or logged."
    )
    secrets_set.add_argument(
        "secret_name",
        help="Name of the secret (format: [a-zA-Z0-9_-]+)"
    )

    # webhook
    webhook_parser = subparsers.add_parser("webhook", help="Secret intake endpoint")
    webhook_subparsers = webhook_parser.add_subparsers(dest="webhook_command")
    webhook_serve = webhook_subparsers.add_parser("serve", help="Serve the secret intake endpoint")
    webhook_serve.add_argument("--host", help="Listen address (default from config, 127.0.0.1)")
    webhook_serve.add_argument("--port", type=int, help="Listen port (default from config, 9090)")

    return parser, {
        "config": (config_parser, "config_command", {"show": cmd_config_show}),
        "apps": (apps_parser, "apps_command", {
            "list": cmd_apps_list, "put": cmd_apps_put, "delete": cmd_apps_delete,
        }),
        "machines": (machines_parser, "machines_command", {
            "list": cmd_machines_list, "get": cmd_machines_get, "create": cmd_machines_create,
            "delete": cmd_machines_delete, "start": cmd_machines_start, "stop": cmd_machines_stop,
        }),
        "volumes": (volumes_parser, "volumes_command", {
            "list": cmd_volumes_list, "create": cmd_volumes_create, "delete": cmd_volumes_delete,
        }),
        "ips": (ips_parser, "ips_command", {
            "list": cmd_ips_list, "allocate": cmd_ips_allocate, "release": cmd_ips_release,
        }),
        "secrets": (secrets_parser, "secrets_command", {
            "list": cmd_secrets_list, "set": cmd_secrets_set,
        }),
        "webhook": (webhook_parser, "webhook_command", {"serve": cmd_webhook_serve}),
    }


def main(argv=None):
    """Main CLI entrypoint.

    Exit codes:
        0 - Success
        1 - Runtime errors (authentication, network, resource not found, etc.)
        2 - Usage errors (invalid arguments, invalid name format, etc.)
    """
    parser, groups = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    # If no command provided, show help and exit with usage error code
    if not args.command:
        parser.print_help()
        sys.exit(2)

    # Route to command handlers
    try:
        if args.command == "version":
            cmd_version(args)
            return
        group_parser, dest, handlers = groups[args.command]
        handler = handlers.get(getattr(args, dest, None))
        if handler is None:
            group_parser.print_help()
            sys.exit(2)
        handler(args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(1)
    except InvalidInputError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (FlyError, ConfigError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
