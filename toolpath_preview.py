"""Toolpath projection for previewing a layer range of a program.

This module turns the movement lines of a program into extrusion and
travel line segments that a 3D viewer can draw. Results can be kept in a
:class:`PreviewCache` owned by the caller.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from gcode_parser import Program, layer_number, parse_command

logger = logging.getLogger(__name__)

MIN_MOVE_DISTANCE = 0.1  # mm, shorter moves are not drawn
EXTRUSION_EPSILON = 0.0001


@dataclass
class Toolpaths:
    """Point pairs to draw, each array shaped ``(N, 2, 3)``.

    Points use display axes: G-code X, Z, Y (Z is up in G-code, Y is up
    in the viewer).
    """
    extrusion: np.ndarray
    travel: np.ndarray

    @property
    def extrusion_count(self) -> int:
        return int(self.extrusion.shape[0])

    @property
    def travel_count(self) -> int:
        return int(self.travel.shape[0])


@dataclass
class _LayerPaths:
    extrusion: List[List[Tuple[float, float, float]]] = field(default_factory=list)
    travel: List[List[Tuple[float, float, float]]] = field(default_factory=list)


class PreviewCache:
    """Cache of toolpath projections keyed by program name and range.

    The cache is cleared whenever the sample rate or the travel toggle
    actually changes, and can be cleared explicitly.
    """

    def __init__(self, sample_rate: int = 1, show_travel: bool = False):
        self.sample_rate = sample_rate
        self.show_travel = show_travel
        self._entries: Dict[Tuple[str, int, int, int], Toolpaths] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def configure(self, sample_rate: Optional[int] = None,
                  show_travel: Optional[bool] = None) -> None:
        """Update preview settings, dropping cached entries on a change."""
        changed = False
        if sample_rate is not None and sample_rate != self.sample_rate:
            self.sample_rate = sample_rate
            changed = True
        if show_travel is not None and show_travel != self.show_travel:
            self.show_travel = show_travel
            changed = True
        if changed:
            self.clear()

    def get(self, key: Tuple[str, int, int, int]) -> Optional[Toolpaths]:
        return self._entries.get(key)

    def put(self, key: Tuple[str, int, int, int], toolpaths: Toolpaths) -> None:
        self._entries[key] = toolpaths

    def clear(self) -> None:
        self._entries.clear()


def extract_toolpaths(program: Program, layer_range: Tuple[int, int],
                      sample_rate: int = 1, cache: Optional[PreviewCache] = None) -> Toolpaths:
    """Project a layer range of a program into drawable line segments.

    Args:
        program: Parsed program
        layer_range: Inclusive ``(from_layer, to_layer)``
        sample_rate: Keep every n-th point of each path (1 keeps all)
        cache: Optional cache; its ``sample_rate`` is used when given

    Returns:
        Extrusion and travel point pairs
    """
    if cache is not None:
        sample_rate = cache.sample_rate
    sample_rate = max(1, int(sample_rate))

    key = (program.name, layer_range[0], layer_range[1], sample_rate)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            return cached

    start_layer = max(0, layer_range[0])
    end_layer = min(program.layer_count - 1, layer_range[1])
    start_line, end_line = program.line_range(start_layer, end_layer)

    layers = _collect_paths(program.lines[start_line:end_line + 1], start_layer)

    extrusion: List[Tuple[Tuple[float, float, float], Tuple[float, float, float]]] = []
    travel: List[Tuple[Tuple[float, float, float], Tuple[float, float, float]]] = []
    for number, paths in layers.items():
        if number < start_layer or number > end_layer:
            continue
        for path in paths.extrusion:
            extrusion.extend(_sample(path, sample_rate))
        for path in paths.travel:
            travel.extend(_sample(path, sample_rate))

    result = Toolpaths(extrusion=_as_pairs(extrusion), travel=_as_pairs(travel))
    logger.debug("%s layers %d-%d: %d extrusion and %d travel segments",
                 program.name, start_layer, end_layer, result.extrusion_count, result.travel_count)

    if cache is not None:
        cache.put(key, result)
    return result


def _collect_paths(lines, start_layer: int) -> Dict[int, _LayerPaths]:
    """Group consecutive moves into extrusion and travel paths per layer."""
    layers: Dict[int, _LayerPaths] = {}
    current = np.zeros(3)
    last_e = 0.0
    absolute_e = True
    current_layer = start_layer
    last_layer: Optional[int] = None
    in_layer_change = False
    last_is_extrusion = False
    extrusion_path: List[Tuple[float, float, float]] = []
    travel_path: List[Tuple[float, float, float]] = []

    def flush(extrusion: bool) -> None:
        nonlocal extrusion_path, travel_path
        paths = layers.setdefault(current_layer, _LayerPaths())
        if extrusion and extrusion_path:
            paths.extrusion.append(extrusion_path)
            extrusion_path = []
        if not extrusion and travel_path:
            paths.travel.append(travel_path)
            travel_path = []

    for raw in lines:
        line = raw.strip()

        number = layer_number(line)
        if number is not None:
            if number != last_layer:
                flush(True)
                flush(False)
                in_layer_change = True
                last_layer = number
                current_layer = number
                last_is_extrusion = False
            continue

        if not line or line.startswith(';'):
            continue

        cmd = parse_command(line)
        if cmd.command == 'M82':
            absolute_e = True
            continue
        if cmd.command == 'M83':
            absolute_e = False
            continue
        if not cmd.is_move:
            continue

        target = np.array([
            cmd.x if cmd.x is not None else current[0],
            cmd.y if cmd.y is not None else current[1],
            cmd.z if cmd.z is not None else current[2],
        ])

        if np.linalg.norm(target - current) < MIN_MOVE_DISTANCE:
            current = target
            continue

        if cmd.e is None:
            delta_e = 0.0
        elif absolute_e:
            delta_e = cmd.e - last_e
        else:
            delta_e = cmd.e
        is_extrusion = cmd.command != 'G0' and delta_e > EXTRUSION_EPSILON

        if cmd.e is not None and absolute_e:
            last_e = cmd.e

        if in_layer_change:
            # The move into a new layer is not drawn
            in_layer_change = False
            extrusion_path = []
            travel_path = []
        else:
            if is_extrusion != last_is_extrusion and (extrusion_path or travel_path):
                flush(last_is_extrusion)

            path = extrusion_path if is_extrusion else travel_path
            if not path:
                path.append(_display_point(current))
            path.append(_display_point(target))

        current = target
        last_is_extrusion = is_extrusion

    flush(True)
    flush(False)
    return layers


def _display_point(point: np.ndarray) -> Tuple[float, float, float]:
    # G-code X, Y, Z -> viewer X, Z, Y
    return float(point[0]), float(point[2]), float(point[1])


def _sample(path: List[Tuple[float, float, float]], sample_rate: int):
    """Yield point pairs along a path, skipping ``sample_rate - 1`` points."""
    if len(path) < 2:
        return
    last = len(path) - 1
    for i in range(0, last, sample_rate):
        yield path[i], path[min(i + sample_rate, last)]


def _as_pairs(pairs) -> np.ndarray:
    if not pairs:
        return np.empty((0, 2, 3))
    return np.asarray(pairs, dtype=float)
