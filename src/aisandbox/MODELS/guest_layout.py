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
Fixed locations inside the guest rootfs and the inner container.

The guest OS layout is not configurable: ext4 rootfs, systemd, a ``sandbox``
user with uid 1000.
"""

GUEST_STATE_DIR = "/var/lib/ai-dev-sandbox"
PAYLOAD_NAME = "ai-dev-sandbox.tar"
PAYLOAD_PATH = f"{GUEST_STATE_DIR}/{PAYLOAD_NAME}"
LOADED_MARKER = f"{GUEST_STATE_DIR}/.loaded"

# Egress config dropped by the host side into the shared workspace
EGRESS_ENV_SOURCE = "/workspace/.sandbox.env"
EGRESS_ENV_DIR = f"{GUEST_STATE_DIR}/env"
EGRESS_ENV_FILE = f"{EGRESS_ENV_DIR}/sandbox.env"

UNIT_DIR = "/etc/systemd/system"
DEFAULT_TARGET = "multi-user.target"

GUEST_USER = "sandbox"
GUEST_UID = 1000
GUEST_GID = 1000
GUEST_HOME = f"/home/{GUEST_USER}"

HELPER_SOURCE_DIR = "/opt/aisandbox/src"
HELPER_BIN = "/usr/local/bin/aisandbox"

INNER_CONTAINER_NAME = "ai-dev-sandbox"
INNER_HOME_VOLUME = "ai-dev-sandbox-home"
WORKSPACE_DIR = "/workspace"

INIT_MARKER_NAME = ".sandbox_initialized"
