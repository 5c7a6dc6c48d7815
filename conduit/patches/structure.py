"""Structural rules every tool document must satisfy after an edit."""

from typing import Any, Optional

from conduit.types import infer_step_type


def structural_violations(tool: Any, system_ids: Optional[list[str]] = None) -> list[str]:
    """Every rule *tool* breaks, in document order. Empty means valid.

    Args:
        tool: A tool document (camelCase dict).
        system_ids: When given, request steps must reference one of these.
    """
    if not isinstance(tool, dict):
        return ["Tool must be an object"]
    violations: list[str] = []
    if not tool.get("id") or not isinstance(tool.get("id"), str):
        violations.append("Tool must have a valid 'id' string")
    steps = tool.get("steps")
    if not isinstance(steps, list):
        violations.append("Tool must have a 'steps' array")
        return violations
    if not steps and not tool.get("outputTransform"):
        violations.append("Tool must have at least one step or an outputTransform")

    seen: set[str] = set()
    for i, step in enumerate(steps, start=1):
        if not isinstance(step, dict) or not step.get("id"):
            violations.append(f"Step {i}: missing 'id'")
            continue
        step_id = step["id"]
        if step_id in seen:
            violations.append(f"Step {i} ({step_id}): duplicate step id")
        seen.add(step_id)
        config = step.get("config")
        if not isinstance(config, dict) or not config:
            violations.append(f"Step {i} ({step_id}): missing 'config'")
            continue
        if infer_step_type(config) == "transform":
            if not (config.get("transformCode") or config.get("transform_code")):
                violations.append(f"Step {i} ({step_id}): transform step missing 'transformCode'")
            continue
        if not config.get("systemId"):
            violations.append(f"Step {i} ({step_id}): request step missing 'systemId'")
        elif system_ids is not None and config["systemId"] not in system_ids:
            violations.append(
                f"Step {i} ({step_id}): systemId '{config['systemId']}' not in provided "
                f"systemIds [{', '.join(system_ids)}]"
            )
        if not config.get("url"):
            violations.append(f"Step {i} ({step_id}): request step missing 'url'")
    return violations
