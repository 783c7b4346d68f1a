#!/usr/bin/env python3
"""VM lifecycle tools: CLI entrypoint."""

import argparse

from vmforge import __version__
from vmforge.commands.backends import register_backends_command
from vmforge.commands.vm import register_vm_command
from vmforge.logging_setup import setup_cli_logging


def main():
    parser = argparse.ArgumentParser(description="Provision and manage VMs across cloud and hypervisor backends")
    parser.add_argument("--version", action="version", version=f"vmforge {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every poll observation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    register_vm_command(subparsers)
    register_backends_command(subparsers)

    args = parser.parse_args()
    setup_cli_logging(verbose=args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
