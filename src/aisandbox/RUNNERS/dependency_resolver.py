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
Dependency resolution for boot units to verify and order their edges.
"""
from typing import Dict, List, Sequence

from ..errors import CyclicDependencyError
from ..MODELS.unit_descriptor import UnitDescriptor


class DependencyResolver:
    """
    Orders unit descriptors by their After/Requires/Wants edges.
    """

    def resolve_order(self, units: Sequence[UnitDescriptor]) -> List[str]:
        """
        Determines a valid activation order using topological sort.

        Edges to units outside ``units`` (``docker.service``,
        ``network-online.target``) are provided by the guest OS and ignored.

        :param units: Descriptors about to be installed.
        :return: Unit names, dependencies first.
        :raises CyclicDependencyError: If a circular dependency is detected.
        """
        dependencies: Dict[str, List[str]] = {unit.name: unit.edges for unit in units}

        ordered: List[str] = []
        visited = set()
        processing: List[str] = []

        def visit(name: str):
            """
            Recursive function for topological sort.
            """
            if name in processing:
                cycle = processing[processing.index(name):] + [name]
                raise CyclicDependencyError(f"Circular dependency detected: {' -> '.join(cycle)}")
            if name not in visited:
                processing.append(name)
                for dep in dependencies.get(name, []):
                    if dep in dependencies:
                        visit(dep)
                processing.pop()
                visited.add(name)
                ordered.append(name)

        for name in dependencies:
            visit(name)

        return ordered

    def check_acyclic(self, units: Sequence[UnitDescriptor]) -> None:
        """Raises CyclicDependencyError if the units' edges contain a cycle."""
        self.resolve_order(units)
