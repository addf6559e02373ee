"""Environment variable substitution for configuration files."""

import os
import re

# $${...} is an escaped placeholder; script preludes may need a literal ${...}
_PLACEHOLDER = re.compile(r"\$(\$?)\{([^}]+)\}")


def _resolve(expression: str) -> str:
    if ":-" in expression:
        name, default = expression.split(":-", 1)
        return os.getenv(name, default)

    if ":?" in expression:
        name, message = expression.split(":?", 1)
        value = os.getenv(name)
        if value is None:
            raise ValueError(f"Required environment variable {name}: {message}")
        return value

    value = os.getenv(expression)
    if value is None:
        raise ValueError(f"Required environment variable {expression} not set")
    return value


def substitute_env_vars(text: str) -> str:
    """
    Substitute environment variable placeholders in text.

    Supports formats:
    - ${VAR_NAME} - required variable (raises error if missing)
    - ${VAR_NAME:-default} - optional with default value
    - ${VAR_NAME:?error_message} - required with custom error message
    - $${ANYTHING} - left as the literal ${ANYTHING}

    Raises:
        ValueError: If a required variable is not set
    """

    def replacer(match: re.Match[str]) -> str:
        escaped, expression = match.groups()
        if escaped:
            return "${" + expression + "}"
        return _resolve(expression)

    return _PLACEHOLDER.sub(replacer, text)
