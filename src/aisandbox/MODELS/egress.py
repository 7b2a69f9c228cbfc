# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Models for the guest egress policy: its declarative input and compiled form.
"""
import ipaddress
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

DEFAULT_ALLOW_PORTS = "11434"
ALLOW_IP_KEY = "EGRESS_ALLOW_IP"
ALLOW_PORTS_KEY = "EGRESS_ALLOW_TCP_PORTS"


def split_ports(value: str) -> List[int]:
    """
    Parses a comma-separated port list.

    Tokens are trimmed, blank tokens are ignored and duplicates keep their
    first position.

    :raises ValueError: If a token is not a TCP port number.
    """
    ports: List[int] = []
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        if not token.isdigit() or not 1 <= int(token) <= 65535:
            raise ValueError(f"Invalid TCP port: {token!r}")
        port = int(token)
        if port not in ports:
            ports.append(port)
    return ports


class EgressConfig(BaseModel):
    """
    Egress policy input: at most one allow-listed peer and its TCP ports.

    When ``allow_ip`` is unset the port list is ignored.
    """

    allow_ip: Optional[str] = None
    allow_tcp_ports: str = DEFAULT_ALLOW_PORTS

    @field_validator("allow_ip", mode="before")
    @classmethod
    def _check_ip(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        if not value:
            return None
        # The policy is loaded with the IPv4 iptables-restore
        if not isinstance(ipaddress.ip_address(value), ipaddress.IPv4Address):
            raise ValueError(f"Egress peer must be an IPv4 address: {value}")
        return value

    @field_validator("allow_tcp_ports", mode="before")
    @classmethod
    def _check_ports(cls, value):
        if value is None or not str(value).strip():
            return DEFAULT_ALLOW_PORTS
        split_ports(str(value))
        return str(value)

    @property
    def ports(self) -> List[int]:
        """Ordered, de-duplicated TCP ports allowed to the peer."""
        return split_ports(self.allow_tcp_ports)

    @classmethod
    def from_env(cls, env: Mapping[str, Optional[str]]) -> "EgressConfig":
        """
        Builds a config from parsed ``KEY=value`` pairs.
        """
        return cls(allow_ip=env.get(ALLOW_IP_KEY), allow_tcp_ports=env.get(ALLOW_PORTS_KEY))


class Direction(str, Enum):
    """Packet filter chain a rule belongs to."""

    OUTPUT = "OUTPUT"


class Verdict(str, Enum):
    """Packet filter verdicts."""

    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    DROP = "DROP"


class Packet(BaseModel):
    """
    An outbound packet, used to evaluate a compiled policy without a kernel.
    """

    destination: str
    protocol: str = "tcp"
    dport: Optional[int] = None
    out_interface: str = "eth0"
    ctstate: str = "NEW"


class EgressRule(BaseModel):
    """
    A single ``(direction, match, verdict)`` rule. Unset match fields match anything.
    """

    model_config = ConfigDict(frozen=True)

    verdict: Verdict
    direction: Direction = Direction.OUTPUT
    protocol: Optional[str] = None
    destination: Optional[str] = None
    dport: Optional[int] = None
    out_interface: Optional[str] = None
    ctstates: Tuple[str, ...] = ()

    def matches(self, packet: Packet) -> bool:
        """Checks the match predicate against a packet."""
        if self.ctstates and packet.ctstate not in self.ctstates:
            return False
        if self.out_interface and packet.out_interface != self.out_interface:
            return False
        if self.protocol and packet.protocol != self.protocol:
            return False
        if self.dport is not None and packet.dport != self.dport:
            return False
        if self.destination:
            network = ipaddress.ip_network(self.destination, strict=False)
            if ipaddress.ip_address(packet.destination) not in network:
                return False
        return True

    def to_args(self) -> List[str]:
        """
        Renders the rule as ``iptables`` append arguments.
        """
        args = ["-A", self.direction.value]
        if self.ctstates:
            args += ["-m", "conntrack", "--ctstate", ",".join(self.ctstates)]
        if self.out_interface:
            args += ["-o", self.out_interface]
        if self.destination:
            args += ["-d", self.destination]
        if self.protocol:
            args += ["-p", self.protocol]
        if self.dport is not None:
            args += ["--dport", str(self.dport)]
        args += ["-j", self.verdict.value]
        return args


class CompiledPolicy(BaseModel):
    """
    Ordered rule list evaluated first-match-wins over a default-deny chain policy.
    """

    model_config = ConfigDict(frozen=True)

    rules: Tuple[EgressRule, ...]
    default_verdict: Verdict = Verdict.DROP
    direction: Direction = Direction.OUTPUT

    def evaluate(self, packet: Packet) -> Verdict:
        """Returns the verdict the packet filter would reach for a packet."""
        for rule in self.rules:
            if rule.matches(packet):
                return rule.verdict
        return self.default_verdict

    def lines(self) -> List[str]:
        """Rules as iptables argument strings, in evaluation order."""
        return [" ".join(rule.to_args()) for rule in self.rules]

    def render(self) -> str:
        """
        Renders an ``iptables-restore`` document for the filter table.

        Meant to be applied with ``--noflush`` so chains owned by the container
        runtime survive; the policy chain itself is flushed explicitly.
        """
        chain = self.direction.value
        body = [
            "*filter",
            f":{chain} {self.default_verdict.value} [0:0]",
            f"-F {chain}",
            *self.lines(),
            "COMMIT",
        ]
        return "\n".join(body) + "\n"

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for rule in self.rules:
            counts[rule.verdict.value] = counts.get(rule.verdict.value, 0) + 1
        return counts
