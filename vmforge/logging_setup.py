"""CLI logging setup: simple %(message)s format for standalone commands."""

import logging
import sys

from vmforge.redact import SecretRedactingFilter


def setup_cli_logging(verbose=False):
    """Configure root logger with plain message format for CLI commands.

    With *verbose*, DEBUG records (every poll observation) are shown too.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.addFilter(SecretRedactingFilter())
    root.addHandler(handler)
    # SDK loggers are chatty at DEBUG
    for noisy in ("httpx", "httpcore", "botocore", "boto3", "urllib3", "azure"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
