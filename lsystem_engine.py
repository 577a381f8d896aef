#!/usr/bin/env python3
"""lsystem_engine.py

A recursive L-system evaluator that measures and draws turtle-graphics
fractals.

Key features:
- Ordered production rules; several rules for one symbol act as branches of a
  single production within the same generation.
- Terminal symbol definitions applied once rewriting has run out of depth.
- No expanded string is ever built: symbols are interpreted as they are
  resolved.
- Two passes over the same algorithm: measure (bounding box) and render
  (drawing surface), plus a fit step that maps one onto the other.
- SVG and PNG (Pillow) drawing surfaces.
- JSON-based input configuration and a random config generator.

Run:
  python lsystem_engine.py render config.json output.svg
  python lsystem_engine.py render config.json output.png --depth 6
  python lsystem_engine.py validate config.json
  python lsystem_engine.py random out.json --seed 123
  python lsystem_engine.py --help
"""

from __future__ import annotations

import abc
import argparse
import itertools
import json
import logging
import math
import os
import random
import sys
import typing
from collections import Counter
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, cast

from PIL import Image, ImageDraw

logger = logging.getLogger(__name__)

Point = tuple[float, float]

_Pass = typing.Literal["measure", "render"]


# -------------------------
# Errors / Validation
# -------------------------


class LSystemError(Exception):
    pass


class ConfigError(LSystemError, ValueError):
    pass


class DuplicateDefinition(LSystemError):
    pass


class DegenerateBounds(LSystemError):
    pass


class UnbalancedSaveRestore(LSystemError):
    pass


class UnresolvedSymbol(LSystemError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


def _as_float(x: Any, path: str) -> float:
    _require(
        isinstance(x, (int, float)) and not isinstance(x, bool),
        f"{path} must be a number",
    )
    _require(math.isfinite(x), f"{path} must be a finite number")
    return float(x)


def _as_int(x: Any, path: str) -> int:
    _require(
        isinstance(x, int) and not isinstance(x, bool), f"{path} must be an integer"
    )
    return int(x)


def _as_str(x: Any, path: str) -> str:
    _require(isinstance(x, str), f"{path} must be a string")
    return cast(str, x)


def _as_bool(x: Any, path: str) -> bool:
    _require(isinstance(x, bool), f"{path} must be a boolean")
    return cast(bool, x)


def _as_dict(x: Any, path: str) -> dict[str, Any]:
    _require(isinstance(x, dict), f"{path} must be an object")
    return cast(dict[str, Any], x)


def _as_list(x: Any, path: str) -> list[Any]:
    _require(isinstance(x, list), f"{path} must be an array")
    return cast(list[Any], x)


# -------------------------
# Cursor / environment
# -------------------------


@dataclass
class CursorState:
    x: float = 0.0
    y: float = 0.0
    heading: float = 0.0  # radians
    thickness: float = 1.0

    def snapshot(self) -> CursorState:
        return replace(self)

    def restore_from(self, other: CursorState) -> None:
        self.x = other.x
        self.y = other.y
        self.heading = other.heading
        self.thickness = other.thickness

    def ahead(self, distance: float) -> Point:
        return (
            self.x + distance * math.cos(self.heading),
            self.y + distance * math.sin(self.heading),
        )


@dataclass
class Bounds:
    """Enclosing rectangle of everything visited by a measure pass.

    The origin is always included since accumulation starts from zero.
    """

    min_x: float = 0.0
    max_x: float = 0.0
    min_y: float = 0.0
    max_y: float = 0.0

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def include(self, x: float, y: float) -> None:
        if not (math.isfinite(x) and math.isfinite(y)):
            raise DegenerateBounds(
                f"cursor reached a non-finite position ({x!r}, {y!r})"
            )
        self.min_x = min(self.min_x, x)
        self.max_x = max(self.max_x, x)
        self.min_y = min(self.min_y, y)
        self.max_y = max(self.max_y, y)

    def inflate_around(self, x: float, y: float, radius: float) -> None:
        self.include(x - radius, y - radius)
        self.include(x + radius, y + radius)

    def as_dict(self) -> dict[str, float]:
        return {
            "min_x": self.min_x,
            "max_x": self.max_x,
            "min_y": self.min_y,
            "max_y": self.max_y,
        }


class RandomSource(Protocol):
    def uniform(self, a: float, b: float) -> float: ...


class Surface(Protocol):
    """2D drawing surface with canvas-like semantics."""

    width: float
    height: float

    def begin_path(self) -> None: ...

    def move_to(self, x: float, y: float) -> None: ...

    def line_to(self, x: float, y: float) -> None: ...

    def bezier_curve_to(
        self, c1x: float, c1y: float, c2x: float, c2y: float, x: float, y: float
    ) -> None: ...

    def stroke(self) -> None: ...

    def fill(self) -> None: ...

    def set_line_width(self, width: float) -> None: ...

    def set_fill_style(self, color: str) -> None: ...

    def set_composite_operation(self, mode: str) -> None: ...

    def scale(self, sx: float, sy: float) -> None: ...

    def translate(self, tx: float, ty: float) -> None: ...


ExpandHook = Callable[["Rule", int], None]

DEFAULT_LEAF_FILL = "rgb(0,160,0)"


@dataclass
class Environment:
    """Context owned by exactly one measure or render call."""

    resolver: Evaluator
    rng: RandomSource
    surface: Surface | None = None
    bounds: Bounds = field(default_factory=Bounds)
    save_stack: list[CursorState] = field(default_factory=list)
    on_expand: ExpandHook | None = None
    leaf_fill: str = DEFAULT_LEAF_FILL
    # Separate from rng so leaf shading never shifts the rotation stream.
    shade_rng: RandomSource | None = None

    def leaf_color(self) -> str:
        if self.shade_rng is None:
            return self.leaf_fill
        return f"rgb(0,{round(self.shade_rng.uniform(100, 220))},0)"

    def require_surface(self) -> Surface:
        if self.surface is None:
            raise RuntimeError("render literal evaluated without a drawing surface")
        return self.surface


# -------------------------
# Literals
# -------------------------


class Literal(abc.ABC):
    """One turtle operation. Subclasses are frozen and hold no run state."""

    @abc.abstractmethod
    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None: ...

    @abc.abstractmethod
    def render(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None: ...


@dataclass(frozen=True)
class Leaf(Literal):
    base_size: float

    def size_for(self, thickness: float) -> float:
        return self.base_size * 1.03**thickness * 0.9

    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        env.bounds.inflate_around(state.x, state.y, 2 * self.size_for(state.thickness))

    def render(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        surface = env.require_surface()
        size = self.size_for(state.thickness)
        half = size / 2
        x, y, h = state.x, state.y, state.heading

        surface.set_composite_operation("source-over")
        surface.begin_path()
        surface.move_to(x, y)
        surface.bezier_curve_to(
            x + half * math.cos(h - math.pi / 4),
            y + half * math.sin(h - math.pi / 4),
            x + half * math.cos(h),
            y + half * math.sin(h),
            x + size * math.cos(h),
            y + size * math.sin(h),
        )
        surface.bezier_curve_to(
            x + half * math.cos(h),
            y + half * math.sin(h),
            x + half * math.cos(h + math.pi / 4),
            y + half * math.sin(h + math.pi / 4),
            x,
            y,
        )
        surface.set_fill_style(env.leaf_color())
        surface.fill()
        # Anything drawn after a leaf goes underneath it.
        surface.set_composite_operation("destination-over")


@dataclass(frozen=True)
class Rotate(Literal):
    angle_deg: float

    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        state.heading += math.radians(self.angle_deg)

    render = measure


@dataclass(frozen=True)
class RandomRotate(Literal):
    min_deg: float
    max_deg: float

    def __post_init__(self) -> None:
        _require(
            self.min_deg <= self.max_deg,
            f"random rotation range [{self.min_deg}, {self.max_deg}] is reversed",
        )

    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        # Sampled per invocation, so measure and render see different angles.
        state.heading += math.radians(env.rng.uniform(self.min_deg, self.max_deg))

    render = measure


@dataclass(frozen=True)
class SetThickness(Literal):
    value: float

    def __post_init__(self) -> None:
        if self.value < 0:
            object.__setattr__(self, "value", 0.0)

    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        state.thickness = self.value

    render = measure


@dataclass(frozen=True)
class ScaleThickness(Literal):
    factor: float

    def __post_init__(self) -> None:
        if self.factor < 0:
            object.__setattr__(self, "factor", 0.0)

    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        state.thickness *= self.factor

    render = measure


@dataclass(frozen=True)
class Save(Literal):
    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        env.save_stack.append(state.snapshot())

    render = measure


@dataclass(frozen=True)
class Restore(Literal):
    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        if not env.save_stack:
            raise UnbalancedSaveRestore("restore encountered with empty save stack")
        state.restore_from(env.save_stack.pop())

    render = measure


@dataclass(frozen=True)
class Move(Literal):
    distance: float

    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        state.x, state.y = state.ahead(self.distance)
        env.bounds.include(state.x, state.y)

    def render(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        state.x, state.y = state.ahead(self.distance)


@dataclass(frozen=True)
class Draw(Literal):
    distance: float

    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        state.x, state.y = state.ahead(self.distance)
        env.bounds.include(state.x, state.y)

    def render(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        surface = env.require_surface()
        nx, ny = state.ahead(self.distance)
        surface.begin_path()
        surface.set_line_width(state.thickness)
        surface.move_to(state.x, state.y)
        surface.line_to(nx, ny)
        surface.stroke()
        state.x, state.y = nx, ny


@dataclass(frozen=True)
class SymbolRef(Literal):
    name: str

    def measure(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        env.resolver.resolve(self.name, "measure", state, env, depth, last_rule_index)

    def render(
        self, state: CursorState, env: Environment, depth: int, last_rule_index: int
    ) -> None:
        env.resolver.resolve(self.name, "render", state, env, depth, last_rule_index)


# -------------------------
# Rule / definition tables
# -------------------------


@dataclass(frozen=True)
class Rule:
    index: int
    symbol: str
    substitution: tuple[Literal, ...]


class RuleTable:
    """Ordered productions. Indices are global and follow insertion order."""

    def __init__(self) -> None:
        self._rules: list[Rule] = []
        self._by_symbol: dict[str, list[Rule]] = {}

    def __len__(self) -> int:
        return len(self._rules)

    def add_rule(self, symbol: str, substitution: Iterable[Literal]) -> None:
        rule = Rule(len(self._rules), symbol, tuple(substitution))
        self._rules.append(rule)
        self._by_symbol.setdefault(symbol, []).append(rule)

    def rules_in_order(self) -> Iterator[Rule]:
        return iter(self._rules)

    def rules_for(self, symbol: str) -> Sequence[Rule]:
        return self._by_symbol.get(symbol, ())


class DefinitionTable:
    def __init__(self) -> None:
        self._definitions: dict[str, tuple[Literal, ...]] = {}

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._definitions

    def define(self, symbol: str, substitution: Iterable[Literal]) -> None:
        if symbol in self._definitions:
            raise DuplicateDefinition(f"symbol '{symbol}' is already defined")
        self._definitions[symbol] = tuple(substitution)

    def lookup(self, symbol: str) -> tuple[Literal, ...] | None:
        return self._definitions.get(symbol)

    def items(self) -> Iterator[tuple[str, tuple[Literal, ...]]]:
        return iter(self._definitions.items())


# -------------------------
# Evaluator
# -------------------------


class Evaluator:
    """Resolves symbols against the rule and definition tables.

    A rule whose index lies after the rule that produced the current context
    continues the same generation and is tried first; wrapping back to an
    earlier or equal index consumes one level of depth. This lets several
    rules for one symbol act as a single production. The first candidate
    with depth left wins; otherwise the symbol's definition applies.

    The tables must not be modified while a measure or render call is running.
    """

    def __init__(
        self,
        *,
        rng: RandomSource | None = None,
        strict: bool = False,
        leaf_fill: str = DEFAULT_LEAF_FILL,
        shade_rng: RandomSource | None = None,
    ) -> None:
        self.rules = RuleTable()
        self.definitions = DefinitionTable()
        self.rng: RandomSource = rng if rng is not None else random.Random()
        self.strict = strict
        self.leaf_fill = leaf_fill
        self.shade_rng = shade_rng

    def add_rule(self, symbol: str, substitution: Iterable[Literal]) -> None:
        self.rules.add_rule(symbol, substitution)

    def define(self, symbol: str, substitution: Iterable[Literal]) -> None:
        self.definitions.define(symbol, substitution)

    def resolve(
        self,
        name: str,
        mode: _Pass,
        state: CursorState,
        env: Environment,
        depth: int,
        last_rule_index: int,
    ) -> None:
        candidates = self.rules.rules_for(name)
        # Successors of the producing rule first, then the wrapped-around rest.
        ordered = itertools.chain(
            (r for r in candidates if r.index > last_rule_index),
            (r for r in candidates if r.index <= last_rule_index),
        )
        for rule in ordered:
            effective = depth if rule.index > last_rule_index else depth - 1
            if effective > 0:
                if env.on_expand is not None:
                    env.on_expand(rule, effective)
                self._interpret(
                    rule.substitution, mode, state, env, effective, rule.index
                )
                return

        substitution = self.definitions.lookup(name)
        if substitution is None:
            if self.strict:
                raise UnresolvedSymbol(f"symbol '{name}' has no rule or definition")
            logger.debug("dropping unresolved symbol %r", name)
            return
        self._interpret(substitution, mode, state, env, 0, -1)

    def _interpret(
        self,
        literals: Iterable[Literal],
        mode: _Pass,
        state: CursorState,
        env: Environment,
        depth: int,
        last_rule_index: int,
    ) -> None:
        for literal in literals:
            getattr(literal, mode)(state, env, depth, last_rule_index)

    def _run(
        self,
        axiom: Iterable[Literal],
        mode: _Pass,
        env: Environment,
        depth: int,
    ) -> None:
        _require(depth >= 1, f"depth must be >= 1, got {depth}")
        try:
            self._interpret(axiom, mode, CursorState(), env, depth - 1, -1)
        except RecursionError as e:
            raise ConfigError(
                f"depth {depth} exceeds the interpreter's recursion limit"
            ) from e

    def _environment(
        self, surface: Surface | None, on_expand: ExpandHook | None
    ) -> Environment:
        return Environment(
            resolver=self,
            rng=self.rng,
            surface=surface,
            on_expand=on_expand,
            leaf_fill=self.leaf_fill,
            shade_rng=self.shade_rng,
        )

    def measure(
        self,
        axiom: Iterable[Literal],
        depth: int,
        *,
        on_expand: ExpandHook | None = None,
    ) -> Bounds:
        env = self._environment(None, on_expand)
        self._run(axiom, "measure", env, depth)
        return env.bounds

    def render(
        self,
        axiom: Iterable[Literal],
        surface: Surface,
        depth: int,
        *,
        on_expand: ExpandHook | None = None,
    ) -> None:
        env = self._environment(surface, on_expand)
        self._run(axiom, "render", env, depth)

    def render_and_fit(
        self,
        axiom: Sequence[Literal],
        surface: Surface,
        depth: int,
        *,
        padding: float = 0.0,
    ) -> Bounds:
        """Measure, map the bounds onto the surface, then render.

        The drawing is stretched independently along each axis to fill the
        surface minus ``padding`` on every side.
        """
        bounds = self.measure(axiom, depth)
        w, h = bounds.width, bounds.height
        if not (w > 0 and h > 0 and math.isfinite(w) and math.isfinite(h)):
            raise DegenerateBounds(
                f"cannot fit drawing with extent {w!r} x {h!r} onto a surface"
            )

        scale_x = (surface.width - 2 * padding) / w
        scale_y = (surface.height - 2 * padding) / h
        _require(
            scale_x > 0 and scale_y > 0,
            f"padding {padding} leaves no room on a {surface.width}x{surface.height} surface",
        )
        logger.debug(
            "fit: bounds=%s scale=(%g, %g) padding=%g",
            bounds.as_dict(),
            scale_x,
            scale_y,
            padding,
        )

        surface.translate(padding, padding)
        surface.scale(scale_x, scale_y)
        surface.translate(-bounds.min_x, -bounds.min_y)
        self.render(axiom, surface, depth)
        return bounds


# -------------------------
# Drawing surfaces
# -------------------------


@dataclass
class Subpath:
    start: Point
    # Each segment is either (end,) for a line or (c1, c2, end) for a cubic.
    segments: list[tuple[Point, ...]] = field(default_factory=list)

    def flatten(self, steps: int = 16) -> list[Point]:
        points = [self.start]
        for seg in self.segments:
            if len(seg) == 1:
                points.append(seg[0])
                continue
            p0 = points[-1]
            (c1, c2, p3) = seg
            for i in range(1, steps + 1):
                t = i / steps
                u = 1 - t
                points.append(
                    (
                        u**3 * p0[0]
                        + 3 * u * u * t * c1[0]
                        + 3 * u * t * t * c2[0]
                        + t**3 * p3[0],
                        u**3 * p0[1]
                        + 3 * u * u * t * c1[1]
                        + 3 * u * t * t * c2[1]
                        + t**3 * p3[1],
                    )
                )
        return points


@dataclass
class Shape:
    kind: typing.Literal["stroke", "fill"]
    subpaths: list[Subpath]
    paint: str
    line_width: float = 0.0


class RecordingSurface:
    """Surface that keeps a display list of painted shapes in device space.

    Points are mapped through the current transform as they are added, the
    way a 2D canvas does. With composite mode ``destination-over`` new
    shapes are placed beneath everything painted so far.
    """

    def __init__(
        self, width: float, height: float, *, stroke_style: str = "#000"
    ) -> None:
        _require(width > 0 and height > 0, "surface width and height must be > 0")
        self.width = width
        self.height = height
        self.stroke_style = stroke_style
        self.fill_style = "#000"
        self.line_width = 1.0
        self.composite = "source-over"
        self.shapes: list[Shape] = []
        self._path: list[Subpath] = []
        # x' = a*x + e, y' = d*y + f
        self._a, self._d, self._e, self._f = 1.0, 1.0, 0.0, 0.0

    def _map(self, x: float, y: float) -> Point:
        return (self._a * x + self._e, self._d * y + self._f)

    def scale(self, sx: float, sy: float) -> None:
        self._a *= sx
        self._d *= sy

    def translate(self, tx: float, ty: float) -> None:
        self._e += self._a * tx
        self._f += self._d * ty

    def begin_path(self) -> None:
        self._path = []

    def move_to(self, x: float, y: float) -> None:
        self._path.append(Subpath(self._map(x, y)))

    def _current(self, x: float, y: float) -> Subpath:
        if not self._path:
            self._path.append(Subpath(self._map(x, y)))
        return self._path[-1]

    def line_to(self, x: float, y: float) -> None:
        self._current(x, y).segments.append((self._map(x, y),))

    def bezier_curve_to(
        self, c1x: float, c1y: float, c2x: float, c2y: float, x: float, y: float
    ) -> None:
        self._current(c1x, c1y).segments.append(
            (self._map(c1x, c1y), self._map(c2x, c2y), self._map(x, y))
        )

    def set_line_width(self, width: float) -> None:
        self.line_width = width

    def set_fill_style(self, color: str) -> None:
        self.fill_style = color

    def set_composite_operation(self, mode: str) -> None:
        _require(
            mode in ("source-over", "destination-over"),
            f"unsupported composite operation {mode!r}",
        )
        self.composite = mode

    def _paint(self, shape: Shape) -> None:
        if self.composite == "destination-over":
            self.shapes.insert(0, shape)
        else:
            self.shapes.append(shape)

    def stroke(self) -> None:
        scale = math.sqrt(abs(self._a * self._d))
        self._paint(
            Shape(
                "stroke",
                [replace(sp, segments=list(sp.segments)) for sp in self._path],
                self.stroke_style,
                self.line_width * scale,
            )
        )

    def fill(self) -> None:
        self._paint(
            Shape(
                "fill",
                [replace(sp, segments=list(sp.segments)) for sp in self._path],
                self.fill_style,
            )
        )


def _ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)


def _fmt(x: float, precision: int) -> str:
    # Normalise -0.0 so it never produces "-0" in SVG output.
    if not x:
        x = 0.0
    # Strip trailing zeros for nicer SVG.
    s = f"{x:.{precision}f}"
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    if s == "-0":
        s = "0"
    return s or "0"


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class SvgSurface(RecordingSurface):
    def path_data(self, subpaths: list[Subpath], precision: int) -> str:
        def pt(p: Point) -> str:
            return f"{_fmt(p[0], precision)},{_fmt(p[1], precision)}"

        parts: list[str] = []
        for sp in subpaths:
            parts.append(f"M{pt(sp.start)}")
            for seg in sp.segments:
                if len(seg) == 1:
                    parts.append(f"L{pt(seg[0])}")
                else:
                    parts.append("C" + " ".join(pt(p) for p in seg))
        return " ".join(parts)

    def to_svg(
        self,
        *,
        precision: int = 3,
        flip_y: bool = True,
        background: str | None = None,
        title: str | None = None,
    ) -> str:
        w = _fmt(self.width, precision)
        h = _fmt(self.height, precision)
        lines: list[str] = []
        lines.append('<?xml version="1.0" encoding="UTF-8"?>')
        lines.append(
            '<svg xmlns="http://www.w3.org/2000/svg" version="1.1" '
            f'viewBox="0 0 {w} {h}" width="{w}" height="{h}">'
        )

        if title:
            lines.append(f"  <title>{_escape(title)}</title>")

        if background and background.lower() != "none":
            lines.append(
                f'  <rect x="0" y="0" width="{w}" height="{h}" fill="{background}" />'
            )

        if flip_y:
            # Turtle math is y-up; SVG is y-down.
            lines.append(f'  <g transform="translate(0,{h}) scale(1,-1)">')
            indent = "    "
        else:
            indent = "  "

        for shape in self.shapes:
            if shape.kind == "stroke" and shape.line_width <= 0:
                continue
            d = self.path_data(shape.subpaths, precision)
            if shape.kind == "stroke":
                lines.append(
                    f'{indent}<path d="{d}" stroke="{shape.paint}" '
                    f'stroke-width="{_fmt(shape.line_width, precision)}" '
                    'fill="none" stroke-linecap="round" stroke-linejoin="round" />'
                )
            else:
                lines.append(f'{indent}<path d="{d}" fill="{shape.paint}" />')

        if flip_y:
            lines.append("  </g>")

        lines.append("</svg>")
        return "\n".join(lines) + "\n"

    def write(self, out_path: str, **kwargs: Any) -> None:
        _ensure_parent_dir(out_path)
        with open(out_path, "w", encoding="utf-8") as f:
            f.write(self.to_svg(**kwargs))


class PillowSurface(RecordingSurface):
    def to_image(
        self, *, flip_y: bool = True, background: str | None = "white"
    ) -> Image.Image:
        size = (max(1, round(self.width)), max(1, round(self.height)))
        if background and background.lower() != "none":
            img = Image.new("RGB", size, background)
        else:
            img = Image.new("RGBA", size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(img)

        def device(p: Point) -> Point:
            return (p[0], self.height - p[1]) if flip_y else p

        for shape in self.shapes:
            if shape.kind == "stroke" and shape.line_width <= 0:
                continue
            for sp in shape.subpaths:
                points = [device(p) for p in sp.flatten()]
                if len(points) < 2:
                    continue
                if shape.kind == "stroke":
                    draw.line(
                        points,
                        fill=shape.paint,
                        width=max(1, round(shape.line_width)),
                        joint="curve",
                    )
                else:
                    draw.polygon(points, fill=shape.paint)
        return img

    def write(self, out_path: str, **kwargs: Any) -> None:
        kwargs.pop("precision", None)
        kwargs.pop("title", None)
        _ensure_parent_dir(out_path)
        self.to_image(**kwargs).save(out_path)


# -------------------------
# Config parsing
# -------------------------


@dataclass(frozen=True)
class OutputConfig:
    width: float = 800.0
    height: float = 800.0
    padding: float = 10.0
    precision: int = 3
    flip_y: bool = True
    background: str | None = "white"
    stroke: str = "#000"
    leaf_fill: str = DEFAULT_LEAF_FILL
    leaf_shades: bool = False


@dataclass(frozen=True)
class RenderConfig:
    name: str
    depth: int
    seed: int | None
    axiom: tuple[Literal, ...]
    rules: tuple[tuple[str, tuple[Literal, ...]], ...]
    definitions: tuple[tuple[str, tuple[Literal, ...]], ...]
    output: OutputConfig


# Keyword -> variant built from a single number.
_NUMERIC_LITERALS: dict[str, Callable[[float], Literal]] = {
    "leaf": Leaf,
    "rot": Rotate,
    "thick": SetThickness,
    "relthick": ScaleThickness,
    "move": Move,
    "draw": Draw,
}


def parse_literal(obj: Any, path: str) -> Literal:
    """Parse one literal.

    Strings are symbol references, except "[" and "]" which save and restore
    the cursor. Objects must have exactly one key naming the literal kind.
    """
    if isinstance(obj, str):
        _require(len(obj) > 0, f"{path} must be a non-empty symbol name")
        if obj == "[":
            return Save()
        if obj == "]":
            return Restore()
        return SymbolRef(obj)

    entry = _as_dict(obj, path)
    _require(len(entry) == 1, f"{path} must have exactly one key")
    ((kind, value),) = entry.items()
    where = f"{path}.{kind}"

    if kind in _NUMERIC_LITERALS:
        return _NUMERIC_LITERALS[kind](_as_float(value, where))
    if kind == "randomrot":
        pair = _as_list(value, where)
        _require(len(pair) == 2, f"{where} must be [min, max]")
        return RandomRotate(
            _as_float(pair[0], f"{where}[0]"), _as_float(pair[1], f"{where}[1]")
        )
    if kind == "save":
        return Save()
    if kind == "restore":
        return Restore()
    if kind == "lit":
        name = _as_str(value, where)
        _require(len(name) > 0, f"{where} must be a non-empty symbol name")
        return SymbolRef(name)
    raise ConfigError(f"Unknown literal kind '{kind}' at {path}")


def parse_sequence(obj: Any, path: str) -> tuple[Literal, ...]:
    items = _as_list(obj, path)
    return tuple(parse_literal(item, f"{path}[{i}]") for i, item in enumerate(items))


def _parse_productions(
    obj: Any, path: str
) -> tuple[tuple[str, tuple[Literal, ...]], ...]:
    out: list[tuple[str, tuple[Literal, ...]]] = []
    for i, entry in enumerate(_as_list(obj, path)):
        where = f"{path}[{i}]"
        entry = _as_dict(entry, where)
        symbol = _as_str(entry.get("symbol"), f"{where}.symbol")
        _require(len(symbol) > 0, f"{where}.symbol must be non-empty")
        out.append(
            (symbol, parse_sequence(entry.get("substitution", []), f"{where}.substitution"))
        )
    return tuple(out)


def _parse_output(obj: Any) -> OutputConfig:
    out = _as_dict(obj, "output")
    width = _as_float(out.get("width", 800), "output.width")
    height = _as_float(out.get("height", 800), "output.height")
    _require(width > 0, "output.width must be > 0")
    _require(height > 0, "output.height must be > 0")
    padding = _as_float(out.get("padding", 10), "output.padding")
    _require(padding >= 0, "output.padding must be >= 0")
    _require(
        2 * padding < min(width, height),
        "output.padding must be less than half of width and height",
    )
    precision = _as_int(out.get("precision", 3), "output.precision")
    _require(0 <= precision <= 10, "output.precision must be between 0 and 10")

    background = out.get("background", "white")
    if background is not None:
        background = _as_str(background, "output.background")

    return OutputConfig(
        width=width,
        height=height,
        padding=padding,
        precision=precision,
        flip_y=_as_bool(out.get("flip_y", True), "output.flip_y"),
        background=background,
        stroke=_as_str(out.get("stroke", "#000"), "output.stroke"),
        leaf_fill=_as_str(out.get("leaf_fill", DEFAULT_LEAF_FILL), "output.leaf_fill"),
        leaf_shades=_as_bool(out.get("leaf_shades", False), "output.leaf_shades"),
    )


def parse_config(obj: dict[str, Any]) -> RenderConfig:
    obj = _as_dict(obj, "root")

    name = _as_str(obj.get("name", "L-System"), "name")
    depth = _as_int(obj.get("depth", 1), "depth")
    _require(depth >= 1, "depth must be >= 1")

    seed = obj.get("seed")
    if seed is not None:
        seed = _as_int(seed, "seed")

    axiom = parse_sequence(obj.get("axiom", []), "axiom")
    _require(len(axiom) > 0, "axiom must be non-empty")

    return RenderConfig(
        name=name,
        depth=depth,
        seed=seed,
        axiom=axiom,
        rules=_parse_productions(obj.get("rules", []), "rules"),
        definitions=_parse_productions(obj.get("definitions", []), "definitions"),
        output=_parse_output(obj.get("output", {})),
    )


def build_evaluator(cfg: RenderConfig, *, seed: int | None = None) -> Evaluator:
    """Create an evaluator loaded with the config's rules and definitions.

    Raises DuplicateDefinition when the config defines a symbol twice.
    """
    seed = seed if seed is not None else cfg.seed
    ev = Evaluator(
        rng=random.Random(seed),
        leaf_fill=cfg.output.leaf_fill,
        shade_rng=random.Random(seed) if cfg.output.leaf_shades else None,
    )
    for symbol, substitution in cfg.rules:
        ev.add_rule(symbol, substitution)
    for symbol, substitution in cfg.definitions:
        ev.define(symbol, substitution)
    return ev


def load_json(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            return cast(dict[str, Any], json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e


def unresolved_symbols(ev: Evaluator, axiom: Iterable[Literal]) -> set[str]:
    """Names referenced anywhere that have neither a rule nor a definition."""
    sequences: list[Iterable[Literal]] = [axiom]
    sequences.extend(rule.substitution for rule in ev.rules.rules_in_order())
    sequences.extend(sub for _, sub in ev.definitions.items())

    missing: set[str] = set()
    for seq in sequences:
        for literal in seq:
            if (
                isinstance(literal, SymbolRef)
                and not ev.rules.rules_for(literal.name)
                and literal.name not in ev.definitions
            ):
                missing.add(literal.name)
    return missing


# -------------------------
# Random config generator
# -------------------------


def _random_branch_body(
    rng: random.Random, length: int, angle: float, *, p_branch: float = 0.20
) -> list[Any]:
    """Generate a random substitution with balanced save/restore pairs.

    Produces draws, rotations and recursive references to "X".
    """
    body: list[Any] = []
    depth = 0

    for _ in range(length):
        r = rng.random()
        if r < p_branch and depth < 3:
            body.append("[")
            depth += 1
            continue
        if r < p_branch * 2 and depth > 0:
            body.append("]")
            depth -= 1
            continue

        t = rng.random()
        if t < 0.35:
            body.append({"draw": rng.choice([4, 6, 8, 10])})
        elif t < 0.55:
            body.append("X")
        elif t < 0.70:
            body.append({"rot": angle})
        elif t < 0.85:
            body.append({"rot": -angle})
        else:
            body.append({"relthick": 0.8})

    body.extend("]" * depth)

    if "X" not in body:
        body.append("X")
    if not any(isinstance(item, dict) and "draw" in item for item in body):
        body.insert(0, {"draw": 8})
    return body


def generate_random_config(seed: int | None = None) -> dict[str, Any]:
    rng = random.Random(seed)

    angle = rng.choice([15, 20, 22.5, 25, 30, 36, 45])
    jitter = rng.choice([0, 5, 10])

    rules: list[dict[str, Any]] = [
        {
            "symbol": "X",
            "substitution": _random_branch_body(rng, rng.randint(8, 16), angle),
        }
    ]
    if rng.random() < 0.5:
        # Second branch for the same symbol, consulted in the same generation.
        rules.append(
            {
                "symbol": "X",
                "substitution": _random_branch_body(rng, rng.randint(4, 10), angle),
            }
        )

    definitions: list[dict[str, Any]] = [
        {"symbol": "X", "substitution": [{"leaf": rng.choice([4, 6, 8])}]}
    ]

    axiom: list[Any] = [{"thick": 6}, {"rot": -90}]
    if jitter:
        axiom.append({"randomrot": [-jitter, jitter]})
    axiom.append("X")

    cfg: dict[str, Any] = {
        "name": "Random L-System",
        "depth": rng.randint(3, 5),
        "seed": rng.randint(0, 2**31 - 1),
        "axiom": axiom,
        "rules": rules,
        "definitions": definitions,
        "output": {
            "width": 800,
            "height": 800,
            "padding": 10,
            "precision": 3,
            "flip_y": True,
            "background": "white",
            "stroke": "#4a3320",
            "leaf_fill": DEFAULT_LEAF_FILL,
        },
    }

    # Internal sanity check: generated config must always parse cleanly.
    build_evaluator(parse_config(cfg))
    return cfg


def dump_json(obj: dict[str, Any], path: str) -> None:
    _ensure_parent_dir(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)
        f.write("\n")


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
INPUT JSON SYNTAX (render / validate)

Top-level keys

  name: string (optional)
      Title written into the SVG <title>.

  depth: integer >= 1 (default 1)
      Recursion depth. Depth 1 applies only definitions.

  seed: integer (optional)
      Seed for random rotations. Without it every run differs.

  axiom: array of literals (required)
      Where evaluation starts.

  rules: array of {"symbol": string, "substitution": [literals]} (optional)
      Ordered production rules. Several rules may share a symbol: a rule
      that follows the one currently being expanded is applied within the
      same generation, while cycling back to an earlier rule starts the next
      generation. The first rule that still has depth left wins.

  definitions: array of {"symbol": string, "substitution": [literals]}
      What a symbol means once rewriting has run out of depth. At most one
      definition per symbol. Symbols with neither rule nor definition are
      ignored.

Literals

  "F"                     reference to symbol F
  "[" / "]"               save / restore the cursor
  {"lit": "F"}            reference to symbol F (for names "[" or "]")
  {"draw": 10}            move ahead 10 units, drawing a line
  {"move": 10}            move ahead 10 units without drawing
  {"rot": 25}             rotate counter-clockwise by 25 degrees
  {"randomrot": [-5, 5]}  rotate by a uniformly random angle
  {"thick": 3}            set line thickness (negative -> 0)
  {"relthick": 0.8}       multiply line thickness (negative -> 0)
  {"leaf": 6}             draw a leaf; its size grows with thickness
  {"save": true} / {"restore": true}

Output options

  output.width / output.height: number (default 800)
  output.padding: number (default 10)
      The drawing is stretched to fill the surface minus the padding.
  output.precision: integer 0..10 (default 3), SVG only
  output.flip_y: boolean (default true)
  output.background: color or "none" (default "white")
  output.stroke: color of branches (default "#000")
  output.leaf_fill: color of leaves (default "rgb(0,160,0)")
  output.leaf_shades: boolean (default false)
      Give every leaf its own random shade of green instead of leaf_fill.

Files ending in .png are rasterized with Pillow; anything else is SVG.

Example (binary tree)

    {
      "depth": 6,
      "axiom": [{"rot": 90}, "T"],
      "rules": [{"symbol": "T",
                 "substitution": [{"draw": 10}, "[", {"rot": 30}, "T", "]",
                                  "[", {"rot": -30}, "T", "]"]}],
      "definitions": [{"symbol": "T", "substitution": [{"draw": 10}]}]
    }
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lsystem_engine.py",
        description="Recursive L-system evaluator that renders to SVG or PNG.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    pr = sub.add_parser(
        "render",
        help="Render an L-system JSON config to an SVG or PNG file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pr.add_argument("config", help="Path to the input JSON config.")
    pr.add_argument("output", help="Path to write the image (.svg or .png).")
    pr.add_argument("--depth", type=int, default=None, help="Override config depth.")
    pr.add_argument("--seed", type=int, default=None, help="Override config seed.")
    pr.add_argument(
        "--padding", type=float, default=None, help="Override output.padding."
    )

    pv = sub.add_parser(
        "validate",
        help="Validate a JSON config and print a brief summary.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pv.add_argument("config", help="Path to the input JSON config.")

    pg = sub.add_parser(
        "random",
        help="Generate a random JSON config for experimentation.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pg.add_argument("output", help="Where to write the generated JSON file.")
    pg.add_argument(
        "--seed", type=int, default=None, help="Seed for repeatable randomness."
    )

    return p


# -------------------------
# Commands
# -------------------------


def cmd_render(
    config_path: str,
    output_path: str,
    *,
    depth: int | None = None,
    seed: int | None = None,
    padding: float | None = None,
) -> None:
    cfg = parse_config(load_json(config_path))
    ev = build_evaluator(cfg, seed=seed)
    out = cfg.output
    depth = cfg.depth if depth is None else depth
    padding = out.padding if padding is None else padding
    _require(padding >= 0, f"--padding must be >= 0, got {padding}")

    surface: SvgSurface | PillowSurface
    if output_path.lower().endswith(".png"):
        surface = PillowSurface(out.width, out.height, stroke_style=out.stroke)
    else:
        surface = SvgSurface(out.width, out.height, stroke_style=out.stroke)

    ev.render_and_fit(cfg.axiom, surface, depth, padding=padding)
    surface.write(
        output_path,
        precision=out.precision,
        flip_y=out.flip_y,
        background=out.background,
        title=cfg.name,
    )
    logger.info("wrote %d shapes to %s", len(surface.shapes), output_path)


def cmd_validate(config_path: str) -> None:
    cfg = parse_config(load_json(config_path))
    ev = build_evaluator(cfg)

    print(f"name: {cfg.name}")
    print(f"axiom length: {len(cfg.axiom)}")
    print(f"depth: {cfg.depth}")
    print(f"rules: {len(ev.rules)}")
    print(f"definitions: {len(ev.definitions)}")

    expansions: Counter[str] = Counter()
    bounds = ev.measure(
        cfg.axiom, cfg.depth, on_expand=lambda rule, _: expansions.update([rule.symbol])
    )
    print(
        "bounds: "
        f"x=[{bounds.min_x:g}, {bounds.max_x:g}] y=[{bounds.min_y:g}, {bounds.max_y:g}]"
    )
    for symbol, count in sorted(expansions.items()):
        print(f"expansions[{symbol}]: {count}")

    missing = unresolved_symbols(ev, cfg.axiom)
    if missing:
        print(f"warning: ignored symbols (no rule or definition): {', '.join(sorted(missing))}")

    if not (bounds.width > 0 and bounds.height > 0):
        raise DegenerateBounds(
            f"Config produces a degenerate drawing ({bounds.width:g} x {bounds.height:g})"
        )


def cmd_random(output_path: str, seed: int | None) -> None:
    cfg = generate_random_config(seed)
    dump_json(cfg, output_path)


def main(argv: list[str] | None = None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "render":
            cmd_render(
                args.config,
                args.output,
                depth=args.depth,
                seed=args.seed,
                padding=args.padding,
            )
        elif args.cmd == "validate":
            cmd_validate(args.config)
        elif args.cmd == "random":
            cmd_random(args.output, args.seed)
        else:
            raise AssertionError("unreachable")
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except LSystemError as e:
        print(f"Evaluation error: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
