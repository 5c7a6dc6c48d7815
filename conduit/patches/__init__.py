"""JSON Patch engine for tool documents."""

from conduit.patches.engine import apply_patches, format_diff_summary, validate_patches
from conduit.patches.structure import structural_violations

__all__ = ["apply_patches", "format_diff_summary", "structural_violations", "validate_patches"]
