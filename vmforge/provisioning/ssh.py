"""Remote access: SSH sessions built on the system ssh client."""

import logging
import os
from dataclasses import dataclass

from vmforge.provisioning.errors import PreconditionError
from vmforge.provisioning.shell import run_shell_cmd
from vmforge.provisioning.wait import poll_until

logger = logging.getLogger(__name__)


@dataclass
class Credentials:
    """Login credentials for a VM. Key auth takes precedence over password."""

    user: str = ""
    password: str = ""
    private_key_path: str = ""

    def validate(self):
        if not self.user:
            raise PreconditionError("SSH username required")
        if not self.password and not self.private_key_path:
            raise PreconditionError("SSH password or private key required")


@dataclass
class SSHOptions:
    port: int = 22
    connect_timeout: int = 5
    use_private_ip: bool = False
    keep_alive: int = 60
    proxy_jump: str = ""
    poll_interval: float = 5


def require_public_key(path):
    """Raise PreconditionError unless *path* names an existing public key file."""
    if not os.path.isfile(os.path.expanduser(path)):
        raise PreconditionError(f"SSH public key not found: {path}")

def ssh_base_args(address, private_key_path="", port=22, connect_timeout=None, keep_alive=60, proxy_jump=""):
    """Build base SSH arguments."""
    args = [
        "ssh",
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", f"ServerAliveInterval={keep_alive}",
        "-o", "ServerAliveCountMax=5",
    ]
    if private_key_path:
        args += ["-o", "BatchMode=yes", "-i", os.path.expanduser(private_key_path)]
    if connect_timeout:
        args += ["-o", f"ConnectTimeout={connect_timeout}"]
    if proxy_jump:
        args += ["-o", f"ProxyJump={proxy_jump}"]
    if port and port != 22:
        args += ["-p", str(port)]
    args.append(address)
    return args


class SSHSession:
    """A remote shell target. Commands run through one ssh process each."""

    def __init__(self, host, port, credentials, options, runner=run_shell_cmd):
        self.host = host
        self.port = port
        self.credentials = credentials
        self.options = options
        self._runner = runner

    @property
    def address(self):
        return f"{self.credentials.user}@{self.host}"

    def _command(self, remote_command, connect_timeout=None):
        creds = self.credentials
        args = ssh_base_args(
            self.address,
            private_key_path=creds.private_key_path,
            port=self.port,
            connect_timeout=connect_timeout,
            keep_alive=self.options.keep_alive,
            proxy_jump=self.options.proxy_jump,
        )
        env = None
        if not creds.private_key_path:
            # password travels in SSHPASS, never in argv
            args = ["sshpass", "-e", *args]
            env = {**os.environ, "SSHPASS": creds.password}
        args.append(remote_command)
        return args, env

    def run(self, remote_command, timeout=600):
        """Run *remote_command* on the VM and return (returncode, stdout, stderr)."""
        args, env = self._command(remote_command)
        return self._runner(args, timeout=timeout, env=env)

    def wait_reachable(self, timeout):
        """Block until ``ssh ... true`` succeeds, up to *timeout* seconds."""
        args, env = self._command("true", connect_timeout=self.options.connect_timeout)
        logger.info(f"Waiting for SSH connectivity to {self.address}:{self.port} (timeout: {timeout}s)...")

        def _probe():
            rc, _, _ = self._runner(args, timeout=self.options.connect_timeout + 10, env=env)
            return rc

        poll_until(
            _probe,
            lambda rc: rc == 0,
            interval=self.options.poll_interval,
            timeout=timeout,
            description=f"SSH on {self.address}:{self.port}",
        )
        logger.info("SSH is ready.")


class SSHConnector:
    """Builds SSHSession objects; swap for a fake in tests."""

    def __init__(self, runner=run_shell_cmd):
        self._runner = runner

    def connect(self, ip, port, credentials, options):
        credentials.validate()
        return SSHSession(ip, port, credentials, options, runner=self._runner)
