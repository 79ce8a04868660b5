"""Map renderer interface used by the layer orchestrator.

The orchestrator never talks to a concrete map engine. It drives anything
implementing :class:`MapRendererProtocol`: the style operations of a
Mapbox-GL-like renderer (layout/paint properties, filters, feature-state,
GeoJSON source data and source feature queries).

:class:`InMemoryRenderer` keeps all of that in dictionaries and evaluates the
subset of the style expression language the orchestrator emits, so layer
state can be inspected without a browser.
"""

from __future__ import annotations

import dataclasses
from typing import Any, NamedTuple, Protocol

from parcelmap.core import errors

Expression = Any


class FeatureTarget(NamedTuple):
    """Feature-state address: a feature id within one source layer."""

    source: str
    source_layer: str
    id: str | int


class MapRendererProtocol(Protocol):
    """Operations the orchestrator needs from a map renderer."""

    def has_layer(self, layer_id: str) -> bool: ...

    def set_layout_property(self, layer_id: str, name: str, value: Any) -> None: ...

    def set_paint_property(self, layer_id: str, name: str, value: Any) -> None: ...

    def set_filter(self, layer_id: str, filter_expr: Expression | None) -> None: ...

    def set_feature_state(
        self, target: FeatureTarget, state: dict[str, Any]
    ) -> None: ...

    def remove_feature_state(
        self, target: FeatureTarget, key: str | None = None
    ) -> None: ...

    def set_source_data(self, source_id: str, data: dict[str, Any]) -> None: ...

    def query_source_features(
        self,
        source_id: str,
        source_layer: str | None = None,
        filter_expr: Expression | None = None,
    ) -> list[dict[str, Any]]: ...

    def is_style_loaded(self) -> bool: ...


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def evaluate(expr: Expression, feature: dict[str, Any]) -> Any:
    """Evaluate a style expression against a GeoJSON-like feature.

    Supports ``get``, ``has``, ``to-string``, ``literal``, the comparison
    operators, ``!``, ``all`` and ``any``; anything else raises RendererError.
    """
    if not isinstance(expr, list):
        return expr
    if not expr:
        raise errors.RendererError("empty expression")

    op, *args = expr
    properties = feature.get("properties") or {}
    match op:
        case "get":
            return properties.get(args[0])
        case "has":
            return args[0] in properties
        case "literal":
            return args[0]
        case "to-string":
            return _to_string(evaluate(args[0], feature))
        case "!":
            return not evaluate(args[0], feature)
        case "all":
            return all(evaluate(arg, feature) for arg in args)
        case "any":
            return any(evaluate(arg, feature) for arg in args)
        case "==" | "!=" | ">" | "<" | ">=" | "<=":
            left = evaluate(args[0], feature)
            right = evaluate(args[1], feature)
            if op == "==":
                return left == right
            if op == "!=":
                return left != right
            if left is None or right is None:
                return False
            return {
                ">": left > right,
                "<": left < right,
                ">=": left >= right,
                "<=": left <= right,
            }[op]
    raise errors.RendererError(f"unsupported expression operator: {op!r}")


@dataclasses.dataclass
class Layer:
    id: str
    source: str
    source_layer: str | None = None
    layout: dict[str, Any] = dataclasses.field(default_factory=dict)
    paint: dict[str, Any] = dataclasses.field(default_factory=dict)
    filter: Expression | None = None

    @property
    def visible(self) -> bool:
        return self.layout.get("visibility", "visible") != "none"


class InMemoryRenderer(MapRendererProtocol):
    """Dictionary-backed renderer for tests and headless use.

    Vector source features are registered with :meth:`add_features`; GeoJSON
    sources receive their data through :meth:`set_source_data`. Feature-state
    writes can be made to fail for chosen ids via ``failing_feature_ids`` to
    exercise per-feature error handling.
    """

    def __init__(self, style_loaded: bool = True) -> None:
        self.layers: dict[str, Layer] = {}
        self.vector_features: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.source_data: dict[str, dict[str, Any]] = {}
        self.feature_states: dict[FeatureTarget, dict[str, Any]] = {}
        self.failing_feature_ids: set[str | int] = set()
        self.style_loaded = style_loaded

    def add_layer(self, layer: Layer) -> None:
        self.layers[layer.id] = layer

    def add_features(
        self, source: str, source_layer: str, features: list[dict[str, Any]]
    ) -> None:
        self.vector_features.setdefault((source, source_layer), []).extend(features)

    def _layer(self, layer_id: str) -> Layer:
        try:
            return self.layers[layer_id]
        except KeyError:
            raise errors.RendererError(f"layer {layer_id} does not exist") from None

    def has_layer(self, layer_id: str) -> bool:
        return layer_id in self.layers

    def set_layout_property(self, layer_id: str, name: str, value: Any) -> None:
        self._layer(layer_id).layout[name] = value

    def set_paint_property(self, layer_id: str, name: str, value: Any) -> None:
        self._layer(layer_id).paint[name] = value

    def set_filter(self, layer_id: str, filter_expr: Expression | None) -> None:
        self._layer(layer_id).filter = filter_expr

    def set_feature_state(self, target: FeatureTarget, state: dict[str, Any]) -> None:
        if target.id in self.failing_feature_ids:
            raise errors.RendererError(f"feature {target.id} is not loaded")
        self.feature_states.setdefault(target, {}).update(state)

    def remove_feature_state(
        self, target: FeatureTarget, key: str | None = None
    ) -> None:
        if target.id in self.failing_feature_ids:
            raise errors.RendererError(f"feature {target.id} is not loaded")
        if key is None:
            self.feature_states.pop(target, None)
            return
        state = self.feature_states.get(target)
        if state is not None:
            state.pop(key, None)
            if not state:
                del self.feature_states[target]

    def set_source_data(self, source_id: str, data: dict[str, Any]) -> None:
        self.source_data[source_id] = data

    def query_source_features(
        self,
        source_id: str,
        source_layer: str | None = None,
        filter_expr: Expression | None = None,
    ) -> list[dict[str, Any]]:
        if source_layer is None:
            data = self.source_data.get(source_id)
            candidates = [data] if data and data.get("type") == "Feature" else (
                (data or {}).get("features", [])
            )
        else:
            candidates = self.vector_features.get((source_id, source_layer), [])
        if filter_expr is None:
            return list(candidates)
        return [f for f in candidates if evaluate(filter_expr, f)]

    def is_style_loaded(self) -> bool:
        return self.style_loaded

    def rendered_features(self, layer_id: str) -> list[dict[str, Any]]:
        """Features a layer would draw: visible layer, filter applied."""
        layer = self._layer(layer_id)
        if not layer.visible:
            return []
        return self.query_source_features(
            layer.source, layer.source_layer, layer.filter
        )
