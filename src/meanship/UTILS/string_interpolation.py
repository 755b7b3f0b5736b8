"""
Utilities for compose-style variable interpolation.
"""
import re
from typing import Dict, Set


class EnvironmentInterpolator:
    """
    Interpolates variables the way docker compose does.
    Supports ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:?message},
    ${VAR:+value} and the $$ escape.
    """
    # Group 1: $$ escape, group 2: VAR name, group 3: modifier, group 4: operand
    PATTERN = re.compile(r'\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?:(:-|-|:\?|\?|:\+|\+)([^}]*))?\}')

    @classmethod
    def interpolate(cls, template: str, context: Dict[str, str]) -> str:
        """
        Interpolates variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The variables available for substitution.
        :return: The interpolated string.
        :raises KeyError: If a variable without default is unset, or a
            ``${VAR:?message}`` check fails.
        """
        def replace(match):
            if match.group(0) == '$$':
                return '$'
            var_name, modifier, operand = match.group(1), match.group(2), match.group(3)
            value = context.get(var_name)

            if modifier == ':-':
                return value if value else operand
            if modifier == '-':
                return value if value is not None else operand
            if modifier in (':?', '?'):
                unset = not value if modifier == ':?' else value is None
                if unset:
                    raise KeyError(operand or f"Variable {var_name} is required")
                return value
            if modifier == ':+':
                return operand if value else ''
            if modifier == '+':
                return operand if value is not None else ''
            if value is None:
                raise KeyError(f"Variable {var_name} not found in context")
            return value

        return cls.PATTERN.sub(replace, template)

    @classmethod
    def variables(cls, template: str) -> Set[str]:
        """Names of all variables referenced by ``template``."""
        return {m.group(1) for m in cls.PATTERN.finditer(template) if m.group(1)}
