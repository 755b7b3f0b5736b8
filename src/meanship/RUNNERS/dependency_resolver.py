"""
Dependency resolution for services to determine pull and startup order.
"""
from typing import List
from ..MODELS.orchestration_config import ServiceDescriptor
from ..errors import DescriptorError


class DependencyResolver:
    """
    Orders services so that each comes after everything it depends on.
    """
    def resolve_order(self, descriptor: ServiceDescriptor) -> List[str]:
        """
        Determines the order services start in, using a topological sort.
        Ties keep descriptor order.

        :param descriptor: The service descriptor.
        :return: Service names, dependencies first.
        :raises DescriptorError: If a circular dependency is detected.
        """
        services = descriptor.services
        ordered: List[str] = []
        visited = set()
        processing: List[str] = []

        def visit(name):
            if name in processing:
                cycle = processing[processing.index(name):] + [name]
                raise DescriptorError(f"Circular dependency: {' -> '.join(cycle)}")
            if name in visited:
                return
            processing.append(name)
            for dep in services[name].depends_on:
                if dep in services:
                    visit(dep)
            processing.pop()
            visited.add(name)
            ordered.append(name)

        for name in services:
            visit(name)

        return ordered
