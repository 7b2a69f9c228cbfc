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
Welcome banner shown on every start of the inner container.
"""
import os
import shutil
from typing import Callable, List, Optional, Tuple

from jinja2 import Template

from .. import __version__

TOOL_GROUPS: List[Tuple[str, List[Tuple[str, str]]]] = [
    ("AI Tools", [
        ("claude", "Claude CLI"),
        ("opencode", "OpenCode"),
        ("chatgpt", "ChatGPT CLI"),
        ("gemini", "Gemini CLI"),
    ]),
    ("Languages", [
        ("go", "Go"),
        ("python3", "Python"),
        ("rustc", "Rust"),
        ("node", "Node.js"),
    ]),
    ("Source Control", [
        ("gh", "GitHub CLI"),
        ("git", "Git"),
    ]),
    ("Voice", [
        ("stt", "speech to text"),
        ("tts", "text to speech"),
    ]),
]

BANNER_TEMPLATE = """
  AI Development Sandbox v{{ version }}
  MicroVM -> Guest Docker -> You

{% for title, tools in groups %}
  {{ title }}:
{% for binary, label, present in tools %}
    {{ '+' if present else '-' }} {{ '%-10s' | format(binary) }} ({{ label }}{{ '' if present else ', not installed' }})
{% endfor %}

{% endfor %}
  Work location: {{ workspace }}
"""


def render_banner(
    version: Optional[str] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
    workspace: str = "/workspace",
) -> str:
    """
    Renders the banner listing which tools are available on PATH.

    :param version: Version shown in the header (SANDBOX_VERSION or the package version).
    :param which: PATH lookup, injectable for tests.
    """
    version = version or os.environ.get("SANDBOX_VERSION") or __version__
    groups = [
        (title, [(binary, label, which(binary) is not None) for binary, label in tools])
        for title, tools in TOOL_GROUPS
    ]
    template = Template(BANNER_TEMPLATE, trim_blocks=True, lstrip_blocks=True)
    return template.render(version=version, groups=groups, workspace=workspace)
