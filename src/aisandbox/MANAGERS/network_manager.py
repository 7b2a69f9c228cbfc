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
Guest egress firewall: compiles the declarative egress config into a
default-deny packet filter policy and applies it at boot.
"""
import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

from ..errors import CommandError, PolicyApplyError
from ..MODELS.egress import CompiledPolicy, EgressConfig, EgressRule, Verdict
from ..MODELS.guest_layout import EGRESS_ENV_DIR, EGRESS_ENV_SOURCE
from ..MODELS.step_result import StepResult
from ..PARSERS.env_parser import EnvParser
from ..RUNNERS.process_runner import CommandRunner

logger = logging.getLogger(__name__)

# Host side of the microVM TAP link
GATEWAY = "172.16.0.1"
AUDIO_RELAY_PORT = 4713
HOST_LLM_PORT = 11434

PRIVATE_RANGES = ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
OPEN_SERVICES = (("udp", 53), ("tcp", 80), ("tcp", 443))


class EgressPolicyCompiler:
    """
    Pure ``EgressConfig -> CompiledPolicy`` translation.

    Rule order is load-bearing: the peer accepts come before the private
    range rejects so a peer inside 10/8, 172.16/12 or 192.168/16 stays
    reachable on its ports.
    """

    def __init__(self, gateway: str = GATEWAY, gateway_ports: Sequence[int] = (AUDIO_RELAY_PORT, HOST_LLM_PORT)):
        """
        Initializes the compiler.

        :param gateway: Address of the host end of the virtual network.
        :param gateway_ports: TCP ports reachable on the gateway only.
        """
        self.gateway = gateway
        self.gateway_ports = tuple(gateway_ports)

    def compile(self, config: EgressConfig) -> CompiledPolicy:
        """
        Builds the ordered rule list for a config. Same input, same output.
        """
        rules: List[EgressRule] = [
            EgressRule(verdict=Verdict.ACCEPT, ctstates=("ESTABLISHED", "RELATED")),
            EgressRule(verdict=Verdict.ACCEPT, out_interface="lo"),
        ]
        for protocol, port in OPEN_SERVICES:
            rules.append(EgressRule(verdict=Verdict.ACCEPT, protocol=protocol, dport=port))

        for port in self.gateway_ports:
            rules.append(EgressRule(verdict=Verdict.ACCEPT, destination=self.gateway, protocol="tcp", dport=port))

        if config.allow_ip:
            for port in config.ports:
                rules.append(
                    EgressRule(verdict=Verdict.ACCEPT, destination=config.allow_ip, protocol="tcp", dport=port)
                )

        for network in PRIVATE_RANGES:
            rules.append(EgressRule(verdict=Verdict.REJECT, destination=network))
        rules.append(EgressRule(verdict=Verdict.REJECT))

        return CompiledPolicy(rules=tuple(rules), default_verdict=Verdict.DROP)


class EgressEnforcer:
    """
    Boot-time side of the egress policy: takes ownership of the env file the
    host dropped into the shared workspace, compiles it and loads the result
    into the kernel in one ``iptables-restore`` transaction.
    """

    def __init__(
        self,
        compiler: Optional[EgressPolicyCompiler] = None,
        runner: Optional[CommandRunner] = None,
        env_source: str = EGRESS_ENV_SOURCE,
        env_dir: str = EGRESS_ENV_DIR,
        restore_bin: str = "iptables-restore",
    ):
        self.compiler = compiler or EgressPolicyCompiler()
        self.runner = runner or CommandRunner("egress")
        self.env_source = Path(env_source)
        self.env_dir = Path(env_dir)
        self.env_file = self.env_dir / "sandbox.env"
        self.restore_bin = restore_bin

    def consume_env_file(self) -> Optional[Path]:
        """
        Moves the env file out of the shared mount into a private directory.

        The directory is 0700 and the file 0600; the source is removed so the
        plaintext does not linger in the workspace.

        :return: Path of the private copy, or None if no env file was dropped.
        """
        if not self.env_source.is_file():
            return None
        os.makedirs(self.env_dir, mode=0o700, exist_ok=True)
        os.chmod(self.env_dir, 0o700)

        content = self.env_source.read_bytes()
        fd = os.open(self.env_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.chmod(self.env_file, 0o600)
        self.env_source.unlink()
        logger.info("Moved %s to %s", self.env_source, self.env_file)
        return self.env_file

    def load_config(self) -> EgressConfig:
        """
        Reads the egress config from the private env file, consuming a newly
        dropped one first. Defaults apply when neither exists.
        """
        self.consume_env_file()
        if not self.env_file.is_file():
            return EgressConfig()
        return EgressConfig.from_env(EnvParser.parse(str(self.env_file)))

    def apply(self, policy: CompiledPolicy) -> None:
        """
        Loads the policy atomically.

        :raises PolicyApplyError: If the packet filter rejects the ruleset.
        """
        try:
            self.runner.run([self.restore_bin, "--noflush"], input_text=policy.render())
        except CommandError as e:
            raise PolicyApplyError(f"Egress policy rejected: {e}") from e

    def run(self) -> StepResult:
        """
        Compiles and applies the policy for this boot.

        An unreadable or invalid env file still leaves the guest closed: the
        no-peer policy is applied before the configuration error propagates.

        :raises PolicyApplyError: If the policy cannot be applied.
        :raises ValueError: If the env file holds an invalid address or port.
        """
        try:
            config = self.load_config()
        except (ValueError, OSError) as e:
            logger.error("Invalid egress config in %s: %s; applying no-peer policy", self.env_file, e)
            self.apply(self.compiler.compile(EgressConfig()))
            raise
        policy = self.compiler.compile(config)
        self.apply(policy)
        peer = f"{config.allow_ip} tcp/{','.join(map(str, config.ports))}" if config.allow_ip else "none"
        counts = policy.summary()
        detail = f"{len(policy.rules)} rules ({counts}), peer: {peer}"
        logger.info("Egress policy applied: %s", detail)
        return StepResult.success("egress", detail)
