"""
Parameter Injection

{{PLACEHOLDER}} substitution over a serialized workflow.
"""

import json
import re
from typing import Any, Dict

from .errors import GraphIntegrityError

PLACEHOLDER_RE = re.compile(r"\{\{([A-Z0-9_]+)\}\}")


def inject_placeholders(workflow: Dict[str, Any], params: Dict[str, Any]) -> Dict[str, Any]:
    """
    Inject parameter values into workflow {{PLACEHOLDER}} fields.

    Handles type-aware substitution:
    - Numeric (int/float): Removes quotes around placeholder for JSON validity
    - Boolean: Converts to lowercase JSON boolean
    - String: JSON-escapes special characters

    Raises:
        GraphIntegrityError: A placeholder is left without a value.
    """
    workflow_str = json.dumps(workflow)

    for param_name, param_value in params.items():
        placeholder = f"{{{{{param_name}}}}}"

        if isinstance(param_value, bool):
            # Bool before int/float since bool is subclass of int
            workflow_str = workflow_str.replace(f'"{placeholder}"', str(param_value).lower())
            workflow_str = workflow_str.replace(placeholder, str(param_value).lower())
        elif isinstance(param_value, (int, float)):
            workflow_str = workflow_str.replace(f'"{placeholder}"', str(param_value))
            workflow_str = workflow_str.replace(placeholder, str(param_value))
        else:
            escaped = json.dumps(str(param_value))[1:-1]
            workflow_str = workflow_str.replace(placeholder, escaped)

    leftover = sorted(set(PLACEHOLDER_RE.findall(workflow_str)))
    if leftover:
        raise GraphIntegrityError(
            f"Unresolved placeholder {{{{{leftover[0]}}}}}",
            role=leftover[0],
            details={"unresolved": leftover},
        )

    return json.loads(workflow_str)
