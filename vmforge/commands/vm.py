"""VM lifecycle commands: vmforge vm <action> <machine.yaml>."""

import functools
import json
import logging
import sys
from pathlib import Path

from vmforge.config import load_machine_config
from vmforge.provisioning.cloud import build_vm
from vmforge.provisioning.errors import PreconditionError, VMError
from vmforge.redact import register_secret

logger = logging.getLogger(__name__)

# Spec fields whose values are redacted from log output.
SECRET_FIELDS = ("password", "client_secret", "api_secret", "api_key", "admin_password")


def _state_path(args):
    if args.state_file:
        return Path(args.state_file)
    machine = Path(args.machine)
    return machine.with_name(f"{machine.stem}.state.json")


def _read_state(path):
    if not path.exists():
        raise PreconditionError(f"No state file at {path}; provision the VM first.")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise PreconditionError(f"State file {path} is corrupt: {e}") from e
    if not isinstance(data, dict):
        raise PreconditionError(f"State file {path} is corrupt: expected a JSON object")
    return data


def _write_state(path, vm):
    path.write_text(json.dumps(vm.to_dict(), indent=2) + "\n")
    logger.debug(f"State written to {path}")


def _load_vm(args, restore=True):
    config = load_machine_config(args.machine)
    for field in SECRET_FIELDS:
        register_secret(str((config.get("spec") or {}).get(field) or ""))
    register_secret(str((config.get("ssh") or {}).get("password") or ""))
    vm = build_vm(config)
    if restore:
        vm.restore(_read_state(_state_path(args)))
    return vm


def cli_action(func):
    """Log VMError failures and exit 1 instead of dumping a traceback."""

    @functools.wraps(func)
    def wrapper(args):
        try:
            func(args)
        except VMError as e:
            logger.error(f"Error: {e}")
            sys.exit(1)

    return wrapper


# ── CLI handlers ───────────────────────────────────────────────────


@cli_action
def handle_provision(args):
    """CLI handler for 'vm provision'."""
    path = _state_path(args)
    if path.exists():
        raise PreconditionError(f"State file {path} already exists; destroy the VM or pass --state-file.")
    vm = _load_vm(args, restore=False)
    try:
        vm.provision()
    finally:
        # Record whatever was created so 'vm destroy' can clean it up.
        if vm.instance_id or vm.resources:
            _write_state(path, vm)
    public, private = vm.get_ips()
    logger.info(f"Public IP:  {public or '-'}")
    logger.info(f"Private IP: {private or '-'}")


def _transition(action):
    @cli_action
    def handler(args):
        vm = _load_vm(args)
        getattr(vm, action)()
        logger.info(f"VM '{vm.get_name()}' is {vm.get_state()}.")

    handler.__name__ = f"handle_{action}"
    handler.__doc__ = f"CLI handler for 'vm {action}'."
    return handler


handle_start = _transition("start")
handle_halt = _transition("halt")
handle_suspend = _transition("suspend")
handle_resume = _transition("resume")


@cli_action
def handle_state(args):
    """CLI handler for 'vm state'."""
    vm = _load_vm(args)
    logger.info(str(vm.get_state()))


@cli_action
def handle_ips(args):
    """CLI handler for 'vm ips'."""
    vm = _load_vm(args)
    public, private = vm.get_ips()
    logger.info(f"Public IP:  {public or '-'}")
    logger.info(f"Private IP: {private or '-'}")


@cli_action
def handle_destroy(args):
    """CLI handler for 'vm destroy'."""
    path = _state_path(args)
    vm = _load_vm(args)
    try:
        vm.destroy()
    except VMError:
        _write_state(path, vm)
        logger.info(f"Remaining resources recorded in {path}; re-run 'vm destroy' to resume.")
        raise
    path.unlink()
    logger.info(f"Removed {path}")


@cli_action
def handle_ssh_check(args):
    """CLI handler for 'vm ssh-check'."""
    vm = _load_vm(args)
    session = vm.get_ssh()
    logger.info(f"Connect:  ssh -p {session.port} {session.address}")


# ── Registration ───────────────────────────────────────────────────

ACTIONS = {
    "provision": (handle_provision, "Create the VM and wait until it is usable"),
    "start": (handle_start, "Start a halted VM"),
    "halt": (handle_halt, "Stop a running VM"),
    "suspend": (handle_suspend, "Suspend a running VM"),
    "resume": (handle_resume, "Resume a suspended VM"),
    "state": (handle_state, "Print the VM's lifecycle state"),
    "ips": (handle_ips, "Print the VM's public and private IP addresses"),
    "destroy": (handle_destroy, "Tear down the VM and its side-resources"),
    "ssh-check": (handle_ssh_check, "Wait until the VM accepts SSH connections"),
}


def register_vm_command(subparsers):
    """Register the 'vm' command with one subparser per lifecycle action."""
    vm_parser = subparsers.add_parser("vm", help="Manage a virtual machine described by a machine file")
    action_subparsers = vm_parser.add_subparsers(dest="action", required=True)

    for action, (handler, help_text) in ACTIONS.items():
        parser = action_subparsers.add_parser(action, help=help_text)
        parser.add_argument("machine", help="Path to the machine YAML file")
        parser.add_argument(
            "--state-file",
            default=None,
            help="Where the provisioned VM is recorded (default: <machine>.state.json)",
        )
        parser.set_defaults(func=handler)
