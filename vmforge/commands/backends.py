"""List the registered VM backends."""

import logging

from vmforge.provisioning.cloud import BACKENDS

logger = logging.getLogger(__name__)


def handle_backends(args):
    for name, (vm_cls, _) in sorted(BACKENDS.items()):
        supported = ", ".join(sorted(vm_cls.supported_operations)) or "-"
        t = vm_cls.default_timeouts
        logger.info(f"{name:<10} ops: {supported:<28} timeouts: action={t.action:g}s ssh={t.ssh:g}s interval={t.interval:g}s")


def register_backends_command(subparsers):
    """Register the backends subcommand."""
    parser = subparsers.add_parser("backends", help="List supported VM backends")
    parser.set_defaults(func=handle_backends)
