"""Shared data types for VM backends."""

from dataclasses import asdict, dataclass, field
from enum import Enum

# Positional contract for get_ips(): missing address classes are "".
PUBLIC_IP = 0
PRIVATE_IP = 1


class VMState(str, Enum):
    """Canonical lifecycle states exposed to callers."""

    STARTING = "starting"
    RUNNING = "running"
    HALTED = "halted"
    SUSPENDED = "suspended"
    PENDING = "pending"
    ERROR = "error"
    UNKNOWN = "unknown"

    def __str__(self):
        return self.value


@dataclass
class Timeouts:
    """Per-operation-class poll bounds, in seconds."""

    action: float = 300
    resource: float = 300
    ssh: float = 120
    interval: float = 5

    def merged(self, overrides):
        """Return a copy with keys from *overrides* (a dict) applied."""
        values = asdict(self)
        for key, value in (overrides or {}).items():
            if key not in values:
                raise ValueError(f"Unknown timeout '{key}' (expected one of: {', '.join(values)})")
            values[key] = float(value)
        return Timeouts(**values)


@dataclass
class SideResource:
    """A backend resource whose lifecycle is coupled to one VM."""

    kind: str
    id: str
    attrs: dict = field(default_factory=dict)

    def to_dict(self):
        return {"kind": self.kind, "id": self.id, "attrs": dict(self.attrs)}

    @classmethod
    def from_dict(cls, data):
        return cls(kind=data["kind"], id=data["id"], attrs=dict(data.get("attrs") or {}))


@dataclass
class VMConnectionInfo:
    """Connection details resolved for a provisioned VM."""

    host: str
    username: str
    ssh_port: int = 22
    port_mappings: list[tuple[int, int]] = field(default_factory=list)

    @property
    def address(self) -> str:
        """SSH address string (user@host)."""
        return f"{self.username}@{self.host}" if self.username else self.host
