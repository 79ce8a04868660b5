"""Client-side layer orchestration over a map renderer.

The orchestrator owns no data. The application feeds it state (viewport,
color mode, the visible-layer set, the focused complex, parcel transactions
and region aggregates), and it translates that state into renderer calls:

* zoom thresholds pick which of the four nested district layers (sido, sig,
  emd, parcels) is shown;
* the color mode selects absolute price or period-over-period change
  coloring. Region layers get one ``match`` expression keyed by region code
  per layer, applied as a single paint-property swap. Parcels are colored by a
  price ``interpolate`` expression or, in change mode, by the
  ``priceChangeRate`` feature-state that the orchestrator writes for the
  parcels in the viewport;
* focus mode narrows the lot and industry layers to one complex and dims
  everything else with a world-sized polygon whose hole is the complex.

Viewport updates are throttled and feature-state refreshes debounced; both
fire from :meth:`LayerOrchestrator.poll`.

Example:
    Drive an in-memory renderer:
        >>> import asyncio
        >>> from parcelmap.services import orchestrator, renderer
        >>> view = renderer.InMemoryRenderer()
        >>> layers = orchestrator.LayerOrchestrator(view)
        >>> asyncio.run(layers.start())
        >>> layers.set_viewport(15.2, orchestrator.ViewportBounds(
        ...     126.70, 37.38, 126.76, 37.42))
        >>> layers.set_color_mode(orchestrator.ColorMode.PRICE_CHANGE)
        >>> layers.enter_focus("1001")
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import logging
import time
from typing import TYPE_CHECKING, Any, Literal

from parcelmap.core import errors
from parcelmap.services import renderer as renderer_mod
from parcelmap.utils import timing

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

logger = logging.getLogger(__name__)

# Zoom thresholds

THRESHOLD_SIDO_TO_SIG = 8
THRESHOLD_SIG_TO_EMD = 12
THRESHOLD_REGION_TO_PARCEL = 14

# Sources and layers

PARCEL_SOURCE = "vt-parcels"
PARCEL_SOURCE_LAYER = "parcels"
PARCEL_FILL = "vt-parcels-fill"
PARCEL_SELECTED_LAYERS = ("vt-parcels-selected-fill", "vt-parcels-selected-line")
COMPLEX_SOURCE = "vt-complex"
COMPLEX_SOURCE_LAYER = "complex"
COMPLEX_LINE = "vt-complex-line"
LOT_LAYERS = ("vt-lots-fill", "vt-lots-line")
INDUSTRY_LAYERS = ("vt-industries-fill", "vt-industries-line")
FOCUS_SOURCE = "focus-overlay"
FOCUS_LAYER = "focus-overlay-fill"

LAYER_VISIBILITY_MAP: dict[str, tuple[str, ...]] = {
    "parcel": ("vt-parcels-fill", "vt-parcels-line"),
    "industrial-complex": (
        "vt-complex-fill",
        "vt-complex-line",
        "vt-complex-label",
        "vt-complex-glow-outer",
        "vt-complex-glow-mid",
        "vt-complex-glow-inner",
    ),
    "industrial-lot": LOT_LAYERS,
    "industry-type": INDUSTRY_LAYERS,
}
FOCUS_LAYER_KEYS = ("industrial-lot", "industry-type")

FEATURE_STATE_KEY = "priceChangeRate"

# Colors

PRICE_COLORS = {
    "low": "#3b82f6",
    "mid": "#10b981",
    "high": "#ef4444",
    "default": "#d1d5db",
}
CHANGE_COLORS = {
    "up": (239, 68, 68),
    "down": (59, 130, 246),
    "neutral": (156, 163, 175),
}
CHANGE_THRESHOLD = 0.02
NO_DATA_COLOR = "rgba(200, 200, 200, 0.3)"
REGION_DEFAULT_COLOR = "#F8FAFC"
REGION_DEFAULT_OPACITY = {"sido": 0.3, "sig": 0.25, "emd": 0.2}
REGION_DATA_OPACITY = 0.6
PARCEL_BASE_COLOR = "#E2E8F0"
FOCUS_DIM_OPACITY = 0.6
COMPLEX_LINE_COLOR = "#D97706"
COMPLEX_FOCUS_LINE_COLOR = "#F59E0B"

WORLD_RING = [[-180, -90], [180, -90], [180, 90], [-180, 90], [-180, -90]]

Period = Literal[1, 3, 5, "custom"]
DEFAULT_CUSTOM_YEARS = 3


class ColorMode(enum.StrEnum):
    PRICE = "price"
    PRICE_CHANGE = "price-change"


class DistrictLevel(enum.StrEnum):
    SIDO = "sido"
    SIG = "sig"
    EMD = "emd"
    PARCEL = "parcel"


DISTRICT_LAYERS: dict[DistrictLevel, tuple[str, ...]] = {
    DistrictLevel.SIDO: ("vt-sido-fill", "vt-sido-line"),
    DistrictLevel.SIG: ("vt-sig-fill", "vt-sig-line"),
    DistrictLevel.EMD: ("vt-emd-fill", "vt-emd-line"),
    DistrictLevel.PARCEL: LAYER_VISIBILITY_MAP["parcel"],
}


def district_level(zoom: float) -> DistrictLevel:
    """District layer shown at ``zoom``."""
    if zoom < THRESHOLD_SIDO_TO_SIG:
        return DistrictLevel.SIDO
    if zoom < THRESHOLD_SIG_TO_EMD:
        return DistrictLevel.SIG
    if zoom < THRESHOLD_REGION_TO_PARCEL:
        return DistrictLevel.EMD
    return DistrictLevel.PARCEL


# Application state records


@dataclasses.dataclass(frozen=True)
class ViewportBounds:
    min_lng: float
    min_lat: float
    max_lng: float
    max_lat: float

    def contains(self, coord: Sequence[float] | None) -> bool:
        if not coord:
            return False
        lng, lat = coord[0], coord[1]
        return (
            self.min_lng <= lng <= self.max_lng
            and self.min_lat <= lat <= self.max_lat
        )


@dataclasses.dataclass(frozen=True)
class Transaction:
    date: datetime.date
    price: float


@dataclasses.dataclass
class ParcelRecord:
    """A parcel as the client knows it.

    Attributes:
        id: Promoted feature id (PNU).
        coord: Visual center ``[lon, lat]``.
        transactions: Transaction history, any order.
        transaction_price: Latest transaction price, if any.
    """

    id: str
    coord: Sequence[float] | None = None
    transactions: list[Transaction] = dataclasses.field(default_factory=list)
    transaction_price: float | None = None


@dataclasses.dataclass(frozen=True)
class RegionAggregate:
    level: str
    code: str
    avg_price: float | None = None
    avg_change_rate: float | None = None


# Price change


def price_change_rate(
    transactions: Sequence[Transaction],
    from_date: datetime.date,
    to_date: datetime.date,
) -> float | None:
    """Relative price change between two dates.

    Compares the latest transaction on or before ``to_date`` with the latest
    one on or before ``from_date``. Returns 0 when both are the same
    transaction, and None with fewer than two transactions or when either end
    has no transaction.
    """
    if len(transactions) < 2:
        return None
    newest_first = sorted(transactions, key=lambda t: t.date, reverse=True)
    latest = next((t for t in newest_first if t.date <= to_date), None)
    past = next((t for t in newest_first if t.date <= from_date), None)
    if latest is None or past is None:
        return None
    if latest.date == past.date:
        return 0.0
    if not past.price:
        return None
    return (latest.price - past.price) / past.price


def _years_before(day: datetime.date, years: int) -> datetime.date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return day.replace(year=day.year - years, day=28)


def period_date_range(
    period: Period,
    custom_range: tuple[datetime.date, datetime.date] | None = None,
    today: datetime.date | None = None,
) -> tuple[datetime.date, datetime.date]:
    """``(from, to)`` dates for a 1/3/5-year preset or a custom window.

    A ``"custom"`` period without a range falls back to three years.
    """
    if period == "custom" and custom_range is not None:
        return custom_range
    years = DEFAULT_CUSTOM_YEARS if period == "custom" else period
    today = today or datetime.date.today()
    return _years_before(today, years), today


# Color expressions


def price_range(prices: Iterable[float]) -> tuple[float, float]:
    """Min and max price after discarding IQR outliers."""
    ordered = sorted(prices)
    if not ordered:
        return 0.0, 0.0
    if len(ordered) == 1:
        return ordered[0], ordered[0]
    q1 = ordered[int(len(ordered) * 0.25)]
    q3 = ordered[int(len(ordered) * 0.75)]
    iqr = q3 - q1
    lower = max(0.0, q1 - 1.5 * iqr)
    upper = q3 + 1.5 * iqr
    kept = [p for p in ordered if lower <= p <= upper] or ordered
    return kept[0], kept[-1]


def price_expression(min_price: float, max_price: float) -> renderer_mod.Expression:
    """Parcel fill by ``transactionPrice``: blue (low) to green to red (high)."""
    if min_price == 0 and max_price == 0:
        return ["literal", PRICE_COLORS["default"]]
    if min_price == max_price:
        return ["literal", PRICE_COLORS["mid"]]
    return [
        "case",
        [
            "any",
            ["!", ["has", "transactionPrice"]],
            ["==", ["get", "transactionPrice"], 0],
            ["==", ["get", "transactionPrice"], None],
        ],
        "rgba(0, 0, 0, 0.01)",
        [
            "interpolate",
            ["linear"],
            ["get", "transactionPrice"],
            min_price, PRICE_COLORS["low"],
            (min_price + max_price) / 2, PRICE_COLORS["mid"],
            max_price, PRICE_COLORS["high"],
        ],
    ]


def _change_alpha(state: renderer_mod.Expression) -> renderer_mod.Expression:
    return ["min", 0.7, ["+", 0.25, ["*", 0.9, ["min", 1, ["abs", state]]]]]


def feature_state_change_expression() -> renderer_mod.Expression:
    """Parcel fill read from the ``priceChangeRate`` feature-state."""
    state = ["feature-state", FEATURE_STATE_KEY]
    up, down, neutral = (
        CHANGE_COLORS["up"], CHANGE_COLORS["down"], CHANGE_COLORS["neutral"]
    )
    return [
        "case",
        ["==", state, None],
        "rgba(0, 0, 0, 0)",
        [">", state, CHANGE_THRESHOLD],
        ["rgba", *up, _change_alpha(state)],
        ["<", state, -CHANGE_THRESHOLD],
        ["rgba", *down, _change_alpha(state)],
        f"rgba({neutral[0]}, {neutral[1]}, {neutral[2]}, 0.15)",
    ]


def price_to_color(price: float | None, min_price: float, max_price: float) -> str:
    """Region color on a blue-yellow-red ramp over ``[min_price, max_price]``."""
    if not price or price <= 0:
        return NO_DATA_COLOR
    t = min(1.0, max(0.0, (price - min_price) / ((max_price - min_price) or 1)))
    if t < 0.5:
        tt = t * 2
        r, g, b = 59 + (255 - 59) * tt, 130 + (220 - 130) * tt, 246 - 246 * tt
    else:
        tt = (t - 0.5) * 2
        r, g, b = 255 - (255 - 239) * tt, 220 - (220 - 68) * tt, 68 * tt
    return f"rgba({round(r)}, {round(g)}, {round(b)}, 0.5)"


def change_rate_to_color(rate: float | None) -> str:
    if rate is None:
        return NO_DATA_COLOR
    if abs(rate) < CHANGE_THRESHOLD:
        return "rgba(156, 163, 175, 0.3)"
    intensity = min(0.7, 0.25 + abs(rate) * 0.9)
    r, g, b = CHANGE_COLORS["up"] if rate > 0 else CHANGE_COLORS["down"]
    return f"rgba({r}, {g}, {b}, {intensity:g})"


def region_color_expression(
    level: str, aggregates: Iterable[RegionAggregate], mode: ColorMode
) -> renderer_mod.Expression | None:
    """One ``match`` expression coloring every region of ``level`` by code.

    Two-digit sido codes are also matched in their ten-digit form. Returns
    None when no region of the level has data for the mode.
    """
    regions = [a for a in aggregates if a.level == level]
    if mode is ColorMode.PRICE:
        regions = [a for a in regions if a.avg_price and a.avg_price > 0]
        if not regions:
            return None
        prices = [a.avg_price for a in regions]
        low, high = min(prices), max(prices)
        colors = [(a.code, price_to_color(a.avg_price, low, high)) for a in regions]
    else:
        if not regions:
            return None
        colors = [(a.code, change_rate_to_color(a.avg_change_rate)) for a in regions]

    expr: list[Any] = ["match", ["get", "code"]]
    for code, color in colors:
        expr.extend((code, color))
        if level == "sido" and len(code) == 2:
            expr.extend((code + "00000000", color))
    expr.append(NO_DATA_COLOR)
    return expr


def focus_overlay(rings: Sequence[Sequence[Sequence[float]]] = ()) -> dict[str, Any]:
    """World-covering polygon with ``rings`` punched out as holes."""
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [WORLD_RING, *rings]},
        "properties": {},
    }


def _focus_filter(entity_id: str, key: str) -> renderer_mod.Expression:
    return ["==", ["to-string", ["get", key]], entity_id]


class LayerOrchestrator:
    """Applies application state to a renderer's layers.

    Args:
        renderer: Any MapRendererProtocol implementation.
        clock: Monotonic clock used by the viewport throttle and debounce.
        throttle_interval: Minimum seconds between viewport recomputations.
        debounce_delay: Quiet seconds before feature-state is refreshed.
    """

    def __init__(
        self,
        renderer: renderer_mod.MapRendererProtocol,
        clock: Callable[[], float] = time.monotonic,
        throttle_interval: float = timing.THROTTLE_INTERVAL,
        debounce_delay: float = timing.DEBOUNCE_DELAY,
    ) -> None:
        self.renderer = renderer
        self.ready = False
        self.zoom: float | None = None
        self.level: DistrictLevel | None = None
        self.bounds: ViewportBounds | None = None
        self.color_mode = ColorMode.PRICE
        self.data_visualization = True
        self.visible_layers: set[str] = set(LAYER_VISIBILITY_MAP)
        self.parcels: list[ParcelRecord] = []
        self.region_aggregates: list[RegionAggregate] = []
        self.period: Period = 3
        self.custom_range: tuple[datetime.date, datetime.date] | None = None
        self.focus_id: str | None = None
        self.selected_parcel: str | None = None
        self.applied_feature_ids: set[str] = set()
        self.selection_guard = timing.SelectionGuard()
        self._viewport_throttle = timing.Throttle(
            self._apply_viewport, throttle_interval, clock
        )
        self._state_debouncer = timing.Debouncer(
            self._refresh_price_change_states, debounce_delay, clock
        )

    # lifecycle

    async def start(
        self,
        retries: int = timing.READY_RETRIES,
        delay: float = timing.READY_DELAY,
    ) -> bool:
        """Wait for the renderer's style, then apply the current state.

        Returns whether the renderer reported ready; when it did not, the
        orchestrator proceeds anyway.
        """
        loaded = await timing.wait_until_ready(
            self.renderer.is_style_loaded, retries, delay
        )
        self.ready = True
        self.apply_layer_visibility()
        self.apply_region_colors()
        self.apply_parcel_fill()
        if self._price_change_active:
            self.apply_price_change_states()
        return loaded

    def poll(self) -> None:
        """Fire throttled and debounced work that has come due."""
        self._viewport_throttle.poll()
        self._state_debouncer.poll()

    @property
    def _price_change_active(self) -> bool:
        return self.color_mode is ColorMode.PRICE_CHANGE and self.data_visualization

    # renderer helpers

    def _set_visibility(self, layers: Iterable[str], visible: bool) -> None:
        for layer_id in layers:
            if self.renderer.has_layer(layer_id):
                self.renderer.set_layout_property(
                    layer_id, "visibility", "visible" if visible else "none"
                )

    def _set_paint(self, layer_id: str, name: str, value: Any) -> None:
        if self.renderer.has_layer(layer_id):
            self.renderer.set_paint_property(layer_id, name, value)

    def _set_filter(self, layers: Iterable[str], filter_expr: Any) -> None:
        for layer_id in layers:
            if self.renderer.has_layer(layer_id):
                self.renderer.set_filter(layer_id, filter_expr)

    # application state

    def set_viewport(self, zoom: float, bounds: ViewportBounds | None) -> None:
        """Record a viewport change; recomputation is throttled."""
        self._viewport_throttle(zoom, bounds)
        if self._price_change_active:
            self._state_debouncer()

    def set_data(
        self,
        parcels: Sequence[ParcelRecord] | None = None,
        region_aggregates: Sequence[RegionAggregate] | None = None,
    ) -> None:
        if parcels is not None:
            self.parcels = list(parcels)
        if region_aggregates is not None:
            self.region_aggregates = list(region_aggregates)
        if not self.ready:
            return
        self.apply_region_colors()
        self.apply_parcel_fill()
        if self._price_change_active:
            self.apply_price_change_states()

    def set_color_mode(self, mode: ColorMode) -> None:
        self._switch_coloring(lambda: setattr(self, "color_mode", ColorMode(mode)))

    def set_data_visualization(self, enabled: bool) -> None:
        self._switch_coloring(lambda: setattr(self, "data_visualization", enabled))

    def _switch_coloring(self, change: Callable[[], None]) -> None:
        was_active = self._price_change_active
        change()
        if not self.ready:
            return
        self.apply_region_colors()
        self.apply_parcel_fill()
        if self._price_change_active:
            self.apply_price_change_states()
        elif was_active:
            self._state_debouncer.cancel()
            self.clear_price_change_states()

    def set_period(
        self,
        period: Period,
        custom_range: tuple[datetime.date, datetime.date] | None = None,
    ) -> None:
        self.period = period
        self.custom_range = custom_range
        if self.ready and self._price_change_active:
            self.apply_price_change_states()

    def set_visible_layers(self, visible_layers: Iterable[str]) -> None:
        self.visible_layers = set(visible_layers)
        if self.ready:
            self.apply_layer_visibility()

    # viewport

    def _apply_viewport(self, zoom: float, bounds: ViewportBounds | None) -> None:
        self.zoom = zoom
        self.bounds = bounds
        level = district_level(zoom)
        if level is not self.level:
            logger.debug(
                "District level %s -> %s at zoom %.2f", self.level, level, zoom
            )
            self.level = level
            if self.ready:
                self.apply_layer_visibility()
        if self.ready and self.color_mode is ColorMode.PRICE:
            self.apply_parcel_fill()

    def _refresh_price_change_states(self) -> None:
        if self.ready and self._price_change_active:
            self.apply_price_change_states()

    def apply_layer_visibility(self) -> None:
        """Show the district layer for the current zoom and honor the visible set.

        While focused, the lot and industry layers are left to focus mode.
        """
        for key, layers in LAYER_VISIBILITY_MAP.items():
            if self.focus_id is not None and key in FOCUS_LAYER_KEYS:
                continue
            visible = key in self.visible_layers
            if key == "parcel" and self.level is not None:
                visible = visible and self.level is DistrictLevel.PARCEL
            self._set_visibility(layers, visible)
        if self.level is None:
            return
        for level in (DistrictLevel.SIDO, DistrictLevel.SIG, DistrictLevel.EMD):
            self._set_visibility(DISTRICT_LAYERS[level], level is self.level)

    # coloring

    def apply_region_colors(self) -> None:
        """Swap each region fill layer to its data-driven (or default) color."""
        for level, opacity in REGION_DEFAULT_OPACITY.items():
            layer_id = f"vt-{level}-fill"
            if not self.renderer.has_layer(layer_id):
                continue
            if not self.data_visualization:
                self.renderer.set_paint_property(
                    layer_id, "fill-color", REGION_DEFAULT_COLOR
                )
                self.renderer.set_paint_property(layer_id, "fill-opacity", opacity)
                continue
            expr = region_color_expression(
                level, self.region_aggregates, self.color_mode
            )
            if expr is None:
                continue
            self.renderer.set_paint_property(layer_id, "fill-color", expr)
            self.renderer.set_paint_property(
                layer_id, "fill-opacity", REGION_DATA_OPACITY
            )

    def viewport_price_range(self) -> tuple[float, float]:
        prices = [
            p.transaction_price
            for p in self.parcels
            if p.transaction_price
            and p.transaction_price > 0
            and (self.bounds is None or self.bounds.contains(p.coord))
        ]
        return price_range(prices)

    def apply_parcel_fill(self) -> None:
        if not self.renderer.has_layer(PARCEL_FILL):
            return
        if not self.data_visualization:
            self.renderer.set_paint_property(
                PARCEL_FILL, "fill-color", PARCEL_BASE_COLOR
            )
            self.renderer.set_paint_property(PARCEL_FILL, "fill-opacity", 0)
        elif self.color_mode is ColorMode.PRICE_CHANGE:
            self.renderer.set_paint_property(
                PARCEL_FILL, "fill-color", feature_state_change_expression()
            )
            self.renderer.set_paint_property(PARCEL_FILL, "fill-opacity", 1)
        else:
            low, high = self.viewport_price_range()
            self.renderer.set_paint_property(
                PARCEL_FILL, "fill-color", price_expression(low, high)
            )
            self.renderer.set_paint_property(PARCEL_FILL, "fill-opacity", 0.35)

    # feature-state

    def _target(self, feature_id: str) -> renderer_mod.FeatureTarget:
        return renderer_mod.FeatureTarget(
            PARCEL_SOURCE, PARCEL_SOURCE_LAYER, feature_id
        )

    def apply_price_change_states(self) -> int:
        """Write ``priceChangeRate`` for viewport parcels with two or more sales.

        A parcel the renderer rejects (for instance because its tile is not
        loaded yet) is logged and skipped.

        Returns:
            Number of parcels whose state was written.
        """
        from_date, to_date = period_date_range(self.period, self.custom_range)
        applied = skipped = 0
        for parcel in self.parcels:
            if self.bounds is not None and not self.bounds.contains(parcel.coord):
                continue
            if len(parcel.transactions) < 2:
                skipped += 1
                continue
            rate = price_change_rate(parcel.transactions, from_date, to_date)
            if rate is None:
                skipped += 1
                continue
            try:
                self.renderer.set_feature_state(
                    self._target(parcel.id), {FEATURE_STATE_KEY: rate}
                )
            except errors.RendererError as exc:
                logger.debug("Feature-state for %s not applied: %s", parcel.id, exc)
                skipped += 1
                continue
            self.applied_feature_ids.add(parcel.id)
            applied += 1
        logger.info(
            "Price change state applied to %d parcels (%d skipped, %s to %s)",
            applied, skipped, from_date, to_date,
        )
        return applied

    def clear_price_change_states(self) -> int:
        """Remove every ``priceChangeRate`` this orchestrator has written."""
        cleared = 0
        applied, self.applied_feature_ids = self.applied_feature_ids, set()
        for feature_id in applied:
            try:
                self.renderer.remove_feature_state(
                    self._target(feature_id), FEATURE_STATE_KEY
                )
            except errors.RendererError as exc:
                logger.debug("Feature-state for %s not removed: %s", feature_id, exc)
                continue
            cleared += 1
        logger.info("Price change state cleared from %d parcels", cleared)
        return cleared

    # focus mode

    def enter_focus(
        self,
        entity_id: str | int,
        show_lots: bool = True,
        show_industries: bool = True,
    ) -> bool:
        """Focus on one industrial complex.

        Lots and industries are filtered to ``complexId == entity_id``, the
        complex outline is highlighted and everything outside the complex is
        dimmed by the overlay.

        Returns:
            Whether the complex geometry was found and the overlay set.
        """
        self.focus_id = str(entity_id)
        lots_filter = _focus_filter(self.focus_id, "complexId")
        self._set_filter(LOT_LAYERS, lots_filter)
        self._set_visibility(LOT_LAYERS, show_lots)
        self._set_filter(INDUSTRY_LAYERS, lots_filter)
        self._set_visibility(INDUSTRY_LAYERS, show_industries)

        is_focused = _focus_filter(self.focus_id, "id")
        self._set_paint(
            COMPLEX_LINE, "line-color",
            ["case", is_focused, COMPLEX_FOCUS_LINE_COLOR, COMPLEX_LINE_COLOR],
        )
        self._set_paint(COMPLEX_LINE, "line-width", ["case", is_focused, 2, 1])

        rings = self._focused_rings(is_focused)
        if rings is None:
            logger.warning("Focused complex %s has no loaded polygon", self.focus_id)
            self.renderer.set_source_data(FOCUS_SOURCE, focus_overlay())
            self._set_paint(FOCUS_LAYER, "fill-opacity", 0)
            return False
        self.renderer.set_source_data(FOCUS_SOURCE, focus_overlay(rings))
        self._set_paint(FOCUS_LAYER, "fill-opacity", FOCUS_DIM_OPACITY)
        logger.info("Focus mode on complex %s", self.focus_id)
        return True

    def _focused_rings(self, filter_expr: Any) -> list[Any] | None:
        features = self.renderer.query_source_features(
            COMPLEX_SOURCE, COMPLEX_SOURCE_LAYER, filter_expr
        )
        if not features:
            return None
        geometry = features[0].get("geometry") or {}
        if geometry.get("type") == "Polygon":
            return list(geometry["coordinates"])
        if geometry.get("type") == "MultiPolygon":
            return [ring for polygon in geometry["coordinates"] for ring in polygon]
        return None

    def exit_focus(self) -> None:
        """Restore lots, industries, the complex outline and the overlay."""
        self.focus_id = None
        self.renderer.set_source_data(FOCUS_SOURCE, focus_overlay())
        self._set_paint(FOCUS_LAYER, "fill-opacity", 0)
        self._set_paint(COMPLEX_LINE, "line-color", COMPLEX_LINE_COLOR)
        self._set_paint(COMPLEX_LINE, "line-width", 1)
        self._set_filter(LOT_LAYERS, None)
        self._set_visibility(LOT_LAYERS, "industrial-lot" in self.visible_layers)
        self._set_filter(INDUSTRY_LAYERS, None)
        self._set_visibility(INDUSTRY_LAYERS, "industry-type" in self.visible_layers)

    # selection

    def select_parcel(self, pnu: str | None) -> None:
        """Highlight ``pnu`` (or nothing) in the selected-parcel layers."""
        self.selected_parcel = pnu
        self._set_filter(PARCEL_SELECTED_LAYERS, ["==", ["get", "PNU"], pnu or ""])
        if pnu != self.selection_guard.current_key:
            self.selection_guard.invalidate()

    async def load_parcel_detail(
        self, pnu: str, fetch: Callable[[], Awaitable[Any]]
    ) -> Any | None:
        """Select ``pnu`` and fetch its details, dropping superseded results."""
        self.select_parcel(pnu)
        return await self.selection_guard.run(pnu, fetch)
