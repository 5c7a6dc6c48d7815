"""Builds the flat variable context ("sourceData") a step resolves against."""

import copy
from typing import Any, Mapping, Optional, Union

from conduit.types import LoopResult, SingleResult

PAGINATION_KEYS = ("page", "offset", "cursor", "limit", "pageSize")

_NO_ITEM = object()


class VariableContextBuilder:
    """Merges everything visible to a step into one mapping.

    Override order, later wins: namespaced credentials, prior step results
    (keyed by step id, in envelope wire shape), pagination variables, the
    current loop item, then the payload fields at the root.

    The builder copies on every build, so nothing a step or expression does
    can change a stored result or the caller's payload.

    Args:
        payload: The run's input payload.
        credentials: Flat ``{"<systemId>_<key>": value}`` map.
    """

    def __init__(self, payload: Optional[Mapping[str, Any]] = None, credentials: Optional[Mapping[str, Any]] = None):
        self._payload = dict(payload or {})
        self._credentials = dict(credentials or {})

    @property
    def credential_keys(self) -> frozenset[str]:
        return frozenset(self._credentials)

    @property
    def payload(self) -> dict[str, Any]:
        return copy.deepcopy(self._payload)

    def build(
        self,
        step_results: Mapping[str, Union[SingleResult, LoopResult]],
        current_item: Any = _NO_ITEM,
        pagination: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        context: dict[str, Any] = dict(self._credentials)
        for step_id, outcome in step_results.items():
            context[step_id] = copy.deepcopy(outcome.to_wire())
        if pagination:
            context.update({k: pagination[k] for k in PAGINATION_KEYS if k in pagination})
        if current_item is not _NO_ITEM:
            context["currentItem"] = copy.deepcopy(current_item)
        context.update(copy.deepcopy(self._payload))
        return context

    def with_item(self, base: Mapping[str, Any], current_item: Any) -> dict[str, Any]:
        """Per-iteration view: *base* plus ``currentItem``, payload still on top."""
        context = dict(base)
        context["currentItem"] = copy.deepcopy(current_item)
        for key in self._payload:
            context[key] = base[key]
        return context

    def with_pagination(self, base: Mapping[str, Any], pagination: Mapping[str, Any]) -> dict[str, Any]:
        """Per-page view: pagination vars under ``currentItem`` and the payload."""
        context = dict(base)
        protected = set(self._payload) | {"currentItem"}
        for key in PAGINATION_KEYS:
            if key in pagination and key not in protected:
                context[key] = pagination[key]
        return context

    def without_credentials(self, context: Mapping[str, Any]) -> dict[str, Any]:
        """Copy of *context* with credential keys removed, payload keys kept."""
        return {
            k: v for k, v in context.items()
            if k not in self._credentials or k in self._payload
        }
