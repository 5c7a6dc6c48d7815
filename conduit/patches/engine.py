"""Validate and apply RFC 6902 patch batches to tool documents.

A batch is a script: operation *k* runs against the document produced by
operations ``1..k-1``. Indices are never shifted on the caller's behalf, so
a batch removing ``/steps/0`` and then ``/steps/1`` removes the original
first and *third* steps.

Nothing is ever partially applied: the batch runs on a deep copy and the
caller's document is untouched whether the batch succeeds or fails.
"""

import copy
import logging
from typing import Any, Iterable, Optional, Union

from conduit.exceptions import (
    PatchTestFailedError, PatchValidationError, PathUnresolvableError, StructuralInvalidError,
)
from conduit.patches import pointer
from conduit.patches.structure import structural_violations
from conduit.types import PatchOp, PatchOperation, PatchResult, Tool

logger = logging.getLogger(__name__)

_NEEDS_VALUE = (PatchOp.ADD, PatchOp.REPLACE, PatchOp.TEST)
_NEEDS_FROM = (PatchOp.MOVE, PatchOp.COPY)
_OPS = {op.value for op in PatchOp}

PatchInput = Union[PatchOperation, dict[str, Any]]


def _patch_violations(index: int, raw: Any) -> list[str]:
    label = f"Patch {index + 1}"
    if isinstance(raw, PatchOperation):
        raw = raw.model_dump(by_alias=True, exclude_unset=True, mode="json")
    if not isinstance(raw, dict):
        return [f"{label}: must be an object"]
    op = raw.get("op")
    if not op:
        return [f"{label}: missing 'op' field"]
    if op not in _OPS:
        return [f"{label}: unknown op '{op}', expected one of {', '.join(sorted(_OPS))}"]
    path = raw.get("path")
    if not path or not isinstance(path, str):
        return [f"{label}: 'path' must be a string"]
    violations = []
    if op in _NEEDS_VALUE and "value" not in raw:
        violations.append(f"{label}: '{op}' operation requires 'value' field")
    if op in _NEEDS_FROM:
        source = raw.get("from")
        if not source:
            violations.append(f"{label}: '{op}' operation requires 'from' field")
        elif not isinstance(source, str) or not source.startswith("/"):
            violations.append(f"{label}: from must start with '/' (RFC 6902), got '{source}'")
    if not path.startswith("/"):
        violations.append(f"{label}: path must start with '/' (RFC 6902), got '{path}'")
    return violations


def validate_patches(patches: Union[PatchInput, Iterable[PatchInput]]) -> list[PatchOperation]:
    """Check a whole batch before anything is applied.

    A single operation is accepted in place of a list.

    Raises:
        PatchValidationError: any operation is malformed. ``violations`` lists
            every problem; the message names the first.
    """
    if isinstance(patches, (dict, PatchOperation)):
        patches = [patches]
    patches = list(patches or [])
    violations: list[str] = []
    first_bad = -1
    for i, raw in enumerate(patches):
        found = _patch_violations(i, raw)
        if found and first_bad < 0:
            first_bad = i
        violations.extend(found)
    if violations:
        raise PatchValidationError(
            violations[0],
            op_index=first_bad,
            violations=violations,
            details={"op_index": first_bad, "violations": violations},
        )
    return [p if isinstance(p, PatchOperation) else PatchOperation.model_validate(p) for p in patches]


def _json_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(_json_equal(left[k], right[k]) for k in left)
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(_json_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return False
    return left == right


def _apply_one(document: Any, op: PatchOperation) -> Any:
    tokens = pointer.parse_pointer(op.path)
    if op.op == PatchOp.ADD:
        return pointer.add(document, tokens, copy.deepcopy(op.value), op.path)
    if op.op == PatchOp.REMOVE:
        pointer.remove(document, tokens, op.path)
        return document
    if op.op == PatchOp.REPLACE:
        return pointer.replace(document, tokens, copy.deepcopy(op.value), op.path)
    if op.op == PatchOp.MOVE:
        if op.path == op.from_:
            return document
        if op.path.startswith(op.from_ + "/"):
            raise PathUnresolvableError(
                f"cannot move '{op.from_}' into its own child '{op.path}'", path=op.path
            )
        value = pointer.remove(document, pointer.parse_pointer(op.from_), op.from_)
        return pointer.add(document, tokens, value, op.path)
    if op.op == PatchOp.COPY:
        value = copy.deepcopy(pointer.get(document, pointer.parse_pointer(op.from_), op.from_))
        return pointer.add(document, tokens, value, op.path)
    # test
    current = pointer.get(document, tokens, op.path)
    if not _json_equal(current, op.value):
        raise PatchTestFailedError(f"test failed at '{op.path}'", path=op.path)
    return document


def apply_patches(
    document: Union[Tool, dict[str, Any]],
    patches: Union[PatchInput, Iterable[PatchInput]],
    system_ids: Optional[list[str]] = None,
    validate_structure: bool = True,
) -> PatchResult:
    """Validate, apply in order, then check the tool's structural rules.

    Args:
        document: Tool or tool document. Never modified.
        patches: The batch. An empty batch returns an equal copy.
        system_ids: Restrict request steps to these system ids.
        validate_structure: Skip the tool rules for non-tool documents.

    Returns:
        PatchResult with the patched document and one normalised diff per operation.

    Raises:
        PatchValidationError: malformed batch.
        PathUnresolvableError: an operation targets a path that does not resolve.
        PatchTestFailedError: a ``test`` operation did not match.
        StructuralInvalidError: the patched document breaks a tool rule.
    """
    if isinstance(document, Tool):
        document = document.to_document()
    operations = validate_patches(patches)
    working = copy.deepcopy(document)

    for i, op in enumerate(operations):
        try:
            working = _apply_one(working, op)
        except (PathUnresolvableError, PatchTestFailedError) as exc:
            logger.info(f"[Patches] operation {i + 1} ({op.op.value} {op.path}) rejected: {exc}")
            raise type(exc)(
                f"Patch {i + 1}: {exc}",
                op_index=i,
                path=op.path,
                details={"op_index": i, "op": op.op.value, "path": op.path},
            ) from exc

    if validate_structure:
        violations = structural_violations(working, system_ids)
        if violations:
            raise StructuralInvalidError(
                violations[0],
                violations=violations,
                details={"violations": violations},
            )

    diffs = [op.to_diff() for op in operations]
    logger.debug(f"[Patches] applied {len(diffs)} operation(s)")
    return PatchResult(document=working, diffs=diffs)


def format_diff_summary(diff: dict[str, Any]) -> str:
    """One line per diff, e.g. ``replace /steps/0/config/url``."""
    summary = f"{diff.get('op')} {diff.get('path')}"
    if diff.get("from"):
        summary += f" (from {diff['from']})"
    return summary
