"""Bounded polling shared by every backend adapter."""

import logging
import time

from vmforge.provisioning.errors import PollTimeoutError, TerminalStateError

logger = logging.getLogger(__name__)


def poll_until(probe, is_terminal, *, interval, timeout, is_fatal=None, description="resource"):
    """Call *probe* every *interval* seconds until *is_terminal* accepts its result.

    Args:
        probe: zero-argument callable returning the current observation.
            Exceptions it raises propagate unchanged and end the poll.
        is_terminal: predicate; the first accepted observation is returned.
        interval: seconds to sleep between probes.
        timeout: total seconds to keep polling.
        is_fatal: optional predicate; an accepted observation raises
            TerminalStateError immediately, without sleeping again.
        description: what is being waited for, used in logs and errors.

    Returns:
        The first observation for which ``is_terminal`` is true.

    Raises:
        TerminalStateError: ``is_fatal`` matched.
        PollTimeoutError: *timeout* elapsed; carries the last observation.
    """
    deadline = time.monotonic() + timeout
    attempts = 0
    while True:
        value = probe()
        attempts += 1
        logger.debug(f"Waiting for {description}: attempt {attempts} observed {value!r}")
        if is_terminal(value):
            return value
        if is_fatal is not None and is_fatal(value):
            raise TerminalStateError(description, value)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PollTimeoutError(description, timeout, value)
        time.sleep(min(interval, remaining))


def state_in(*states):
    """Build a predicate matching any of *states*."""
    wanted = set(states)

    def _match(value):
        return value in wanted

    return _match
