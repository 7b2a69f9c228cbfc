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
The boot units and login hook the transformer bakes into the guest.
"""
from typing import List

from jinja2 import Template

from ..MODELS.guest_layout import (
    EGRESS_ENV_FILE,
    HELPER_BIN,
    INNER_CONTAINER_NAME,
    INNER_HOME_VOLUME,
    GUEST_HOME,
    LOADED_MARKER,
    WORKSPACE_DIR,
)
from ..MODELS.unit_descriptor import UnitDescriptor, UnitType

# Importing a multi-GB payload is the slowest first-boot step
LOAD_TIMEOUT_SEC = 300
IMAGE_WAIT_SEC = 120


def first_boot_unit() -> UnitDescriptor:
    return UnitDescriptor(
        name="load-ai-dev-sandbox.service",
        description="Load ai-dev-sandbox Docker Image first boot",
        after=["docker.service", "guest-init.service"],
        requires=["docker.service"],
        condition_path_exists=[f"!{LOADED_MARKER}"],
        type=UnitType.ONESHOT,
        exec_start=[HELPER_BIN, "first-boot-load"],
        remain_after_exit=True,
        standard_output="journal+console",
        timeout_start_sec=LOAD_TIMEOUT_SEC,
    )


def egress_unit() -> UnitDescriptor:
    return UnitDescriptor(
        name="ai-dev-sandbox-egress.service",
        description="AI Sandbox egress firewall",
        wants=["network-online.target"],
        after=["network-online.target"],
        type=UnitType.ONESHOT,
        exec_start=[HELPER_BIN, "egress", "apply"],
        remain_after_exit=True,
    )


def default_units() -> List[UnitDescriptor]:
    """Units installed into every sandbox image."""
    return [first_boot_unit(), egress_unit()]


LOGIN_HOOK_TEMPLATE = """\
# =============================================================================
# {{ user }} .bash_profile: auto-launch {{ container }} on login
# =============================================================================

[ -f ~/.bashrc ] && source ~/.bashrc

if [ -t 0 ] && [ -z "${SANDBOX_MODE:-}" ] && command -v docker >/dev/null 2>&1; then

  echo ""
  echo "  AI-Dev-Sandbox MicroVM loading..."
  echo ""

  for i in $(seq 1 {{ wait_sec }}); do
    if docker image inspect {{ image }} >/dev/null 2>&1; then
      break
    fi
    sleep 1
  done

  if docker image inspect {{ image }} >/dev/null 2>&1; then
    ENV_FILE_ARG=""
    if [ -f {{ env_file }} ]; then
      ENV_FILE_ARG="--env-file {{ env_file }}"
    fi

    if docker ps --format '{{ '{{' }}.Names{{ '}}' }}' | grep -q '^{{ container }}$'; then
      exec docker exec -it -w {{ workspace }} {{ container }} /bin/bash
    else
      exec docker run -it --rm \\
        --name {{ container }} \\
        --hostname {{ container }} \\
        -v {{ workspace }}:{{ workspace }} \\
        -v {{ home_volume }}:{{ home }} \\
        $ENV_FILE_ARG \\
        {{ image }}
    fi
  else
    echo "  WARNING {{ container }} image not ready after {{ wait_sec }}s" >&2
    echo "  You are at the guest VM shell. Run manually:" >&2
    echo "    docker run -it {{ image }}" >&2
  fi
fi
"""


def render_login_hook(image: str, user: str = "sandbox") -> str:
    """
    Renders the guest login profile that drops interactive logins into the
    inner container.

    :param image: Inner image reference, e.g. ``ai-dev-sandbox:latest``.
    """
    return Template(LOGIN_HOOK_TEMPLATE).render(
        user=user,
        image=image,
        container=INNER_CONTAINER_NAME,
        home_volume=INNER_HOME_VOLUME,
        home=GUEST_HOME,
        workspace=WORKSPACE_DIR,
        env_file=EGRESS_ENV_FILE,
        wait_sec=IMAGE_WAIT_SEC,
    )
