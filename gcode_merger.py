"""Merge engine stitching timeline segments into one G-code program.

The merged program starts with the header of the bottom source, followed
by a banner and a list of the sources used. Each segment then contributes
the lines of its layer range. On a change of source the temperatures, fan
and flow settings from the new source's header are replayed. The extruder
position is rebased so every segment's extrusion starts from zero.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from gcode_parser import LAYER_MARKER, Program
from timeline import Segment, sort_segments

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_KEYS: Tuple[str, ...] = (
    # Extruder temperature
    'M104', 'M109',
    # Bed temperature
    'M140', 'M190',
    # Flow rate
    'M221',
    # Fan control
    'M106', 'M107',
    # Retraction settings written as slicer comments
    ';retraction_', ';retract_',
)

_MOVE_RE = re.compile(r'\s*[Gg]0*[01](?=\s|$)')
_E_TOKEN_RE = re.compile(r'(?<=\s)([Ee])([-+]?(?:\d+\.?\d*|\.\d+))')


@dataclass
class MergeConfig:
    """Configuration for the merged output."""
    banner: str = ";MERGED G-CODE FILE - Created with gcode-mixer"
    settings_keys: Tuple[str, ...] = DEFAULT_SETTINGS_KEYS
    e_decimals: int = 5
    reset_command: str = "G92 E0 ;Reset extruder position"
    respect_relative_extrusion: bool = True  # Leave M83 segments un-rebased


def extract_header(program: Program) -> List[str]:
    """Return the lines of a program before its first layer marker."""
    return program.header_lines()


def extract_settings(program: Program, keys: Sequence[str] = DEFAULT_SETTINGS_KEYS) -> List[str]:
    """Return the header lines that carry one of the settings ``keys``."""
    return [line for line in program.header_lines() if any(key in line for key in keys)]


def find_extrusion(line: str) -> Optional[Tuple[int, int, float]]:
    """Locate the E value of a G0/G1 move.

    Only the code part of the line is searched, never its comment.

    Returns:
        ``(start, end, value)`` of the numeric E value, or None when the
        line is not a move or has no E word
    """
    code = line.split(';', 1)[0]
    move = _MOVE_RE.match(code)
    if not move:
        return None
    token = _E_TOKEN_RE.search(code, move.end())
    if not token:
        return None
    return token.start(2), token.end(2), float(token.group(2))


def rebase_extrusion(line: str, baseline: float, decimals: int = 5) -> str:
    """Rewrite the E value of a move relative to ``baseline``.

    Lines without an E value are returned unchanged.
    """
    found = find_extrusion(line)
    if found is None:
        return line
    start, end, value = found
    return f"{line[:start]}{value - baseline:.{decimals}f}{line[end:]}"


def _is_extruder_reset(line: str) -> bool:
    return line.strip().upper().startswith('G92 E')


def _is_relative_mode(line: str) -> bool:
    return line.split(';', 1)[0].strip().upper() == 'M83'


class GCodeMerger:
    """Builds the merged program for a timeline."""

    def __init__(self, config: Optional[MergeConfig] = None):
        self.config = config or MergeConfig()

    def merge(self, timeline: Sequence[Segment], programs: Mapping[str, Program]) -> str:
        """Merge the timeline into one program text.

        Segments whose program is missing are skipped with a warning; the
        result only covers the segments that could be resolved.

        Args:
            timeline: Segments in any order
            programs: Program store keyed by program id

        Returns:
            Newline-joined merged G-code, empty when nothing can be merged
        """
        ordered = sort_segments(timeline)
        resolved: List[Tuple[Segment, Program]] = []
        for seg in ordered:
            program = programs.get(seg.program_id)
            if program is None:
                logger.warning("Skipping layers %d-%d: program %s is not loaded",
                               seg.start_layer, seg.end_layer, seg.program_id)
                continue
            resolved.append((seg, program))

        if not resolved:
            return ""

        output: List[str] = []
        output.extend(extract_header(resolved[0][1]))
        output.extend(self._manifest(resolved))

        last_program_id: Optional[str] = None
        for idx, (seg, program) in enumerate(resolved):
            start, end = program.line_range(seg.start_layer, seg.end_layer)

            if seg.program_id != last_program_id:
                output.append(f";SWITCHING TO {program.name} - LAYER {seg.start_layer} to {seg.end_layer}")
                output.extend(extract_settings(program, self.config.settings_keys))
                output.append(self.config.reset_command)
                reset_emitted = True
                last_program_id = seg.program_id
            else:
                output.append(f";CONTINUING {program.name} - LAYER {seg.start_layer} to {seg.end_layer}")
                reset_emitted = False

            # Every segment after the first starts its own extruder frame
            if idx != 0 and not reset_emitted:
                output.append(self.config.reset_command)

            output.extend(self._segment_body(program, start, end, first_segment=(idx == 0)))

        logger.info("Merged %d segment(s) from %d program(s) into %d lines",
                    len(resolved), len({seg.program_id for seg, _ in resolved}), len(output))
        return "\n".join(output)

    def _manifest(self, resolved: List[Tuple[Segment, Program]]) -> List[str]:
        lines = [self.config.banner, ";Original files:"]
        seen = set()
        for seg, program in resolved:
            if seg.program_id in seen:
                continue
            seen.add(seg.program_id)
            lines.append(f";  - {program.name}")
        lines.append("")
        return lines

    def _segment_body(self, program: Program, start: int, end: int, first_segment: bool) -> List[str]:
        """Copy lines ``start..end`` with the extruder rebased to zero.

        Rebasing stops at the source's own ``G92 E`` (and at ``M83`` when
        relative extrusion is respected); from then on lines pass through.
        """
        relative = self.config.respect_relative_extrusion and program.is_relative_extrusion_at(start)
        rebasing = not relative
        baseline: Optional[float] = None
        body: List[str] = []

        for line in program.lines[start:end + 1]:
            if not rebasing:
                body.append(line)
                continue

            # Keep the source's own header comments out of the middle of the file
            if not first_segment and line.startswith(';') and not line.startswith(LAYER_MARKER):
                continue

            if _is_extruder_reset(line):
                rebasing = False
                baseline = None
                body.append(line)
                continue

            if self.config.respect_relative_extrusion and _is_relative_mode(line):
                rebasing = False
                body.append(line)
                continue

            found = find_extrusion(line)
            if found is not None:
                if baseline is None:
                    baseline = found[2]
                line = rebase_extrusion(line, baseline, self.config.e_decimals)
            body.append(line)

        return body


def merge_gcodes(timeline: Sequence[Segment], programs: Mapping[str, Program],
                 config: Optional[MergeConfig] = None) -> str:
    """Merge a timeline into one G-code program text."""
    return GCodeMerger(config).merge(timeline, programs)
