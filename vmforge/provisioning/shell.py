"""Shell command execution helper."""

import logging
import subprocess

logger = logging.getLogger(__name__)


def run_shell_cmd(command, timeout=600, env=None):
    """Run a shell command and return (returncode, stdout, stderr).

    Args:
        command: list of command arguments
        timeout: maximum seconds to wait for the command
        env: optional environment mapping for the child process

    Returns:
        (returncode, stdout, stderr) tuple
    """
    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=timeout, env=env)
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {' '.join(command)}")
        return 1, "", "timeout"
    except FileNotFoundError:
        logger.error(f"Error: '{command[0]}' not found. Is it installed and on PATH?")
        return 1, "", f"'{command[0]}' not found"
