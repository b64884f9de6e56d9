"""G-code parser for layer-addressable toolpath programs.

This module reads raw G-code text that follows the Cura layer comment
convention (``;LAYER:<n>``), splits it into lines and records which line
range every layer occupies. It also provides the movement line grammar
shared by the merger and the toolpath preview.
"""

import logging
import re
from pathlib import Path
from typing import Dict, Generator, List, Optional, Tuple
from dataclasses import dataclass, field

from mixer_exceptions import InputError

logger = logging.getLogger(__name__)

LAYER_MARKER = ';LAYER:'

# Inputs longer than this (in characters) are scanned chunk by chunk
LARGE_FILE_THRESHOLD = 5_000_000
DEFAULT_CHUNK_SIZE = 10_000

_LAYER_NUMBER_RE = re.compile(r';LAYER:\s*([-+]?\d+)')
_NUMBER_PREFIX_RE = re.compile(r'[-+]?(?:\d+\.?\d*|\.\d+)')


@dataclass(frozen=True)
class Program:
    """One parsed source G-code file.

    ``layer_map`` maps every observed layer number to the inclusive
    ``(start_line, end_line)`` range it occupies in ``lines``. Lines before
    the first layer marker form the header and belong to no layer. A layer
    number seen twice keeps only its last range, so the header end is
    stored separately in ``first_marker``.
    """
    name: str
    text: str = field(repr=False, compare=False)
    lines: Tuple[str, ...] = field(repr=False)
    layer_map: Dict[int, Tuple[int, int]] = field(default_factory=dict, repr=False)
    layer_count: int = 0
    warnings: Tuple[str, ...] = ()
    first_marker: Optional[int] = None

    def __hash__(self) -> int:
        return hash((self.name, self.lines))

    @property
    def has_layers(self) -> bool:
        return self.layer_count > 0

    @property
    def first_layer_line(self) -> Optional[int]:
        """Index of the first layer marker line, or None without layers."""
        return self.first_marker

    def header_lines(self) -> List[str]:
        """Return all lines before the first layer marker."""
        first = self.first_layer_line
        if first is None:
            return list(self.lines)
        return list(self.lines[:first])

    def line_range(self, from_layer: int, to_layer: int) -> Tuple[int, int]:
        """Resolve an inclusive layer range to an inclusive line range.

        Missing layers fall back to the first line (for ``from_layer``) and
        the last line (for ``to_layer``).
        """
        start = self.layer_map[from_layer][0] if from_layer in self.layer_map else 0
        end = self.layer_map[to_layer][1] if to_layer in self.layer_map else len(self.lines) - 1
        return start, end

    def is_relative_extrusion_at(self, line_index: int) -> bool:
        """Return True if M83 is the extrusion mode in effect before a line."""
        for line in reversed(self.lines[:line_index]):
            command = line.split(';', 1)[0].strip().upper()
            if command == 'M83':
                return True
            if command == 'M82':
                return False
        return False


@dataclass
class GCodeCommand:
    """Represents a single G-code command."""
    command: str
    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None
    e: Optional[float] = None
    f: Optional[float] = None
    comment: Optional[str] = None

    @property
    def is_move(self) -> bool:
        return self.command in ('G0', 'G1')


def split_lines(text: str) -> List[str]:
    """Split text on ``\\n``, dropping a ``\\r`` that precedes it."""
    lines = text.split('\n')
    if '\r' in text:
        lines = [line[:-1] if line.endswith('\r') else line for line in lines]
    return lines


def layer_number(line: str) -> Optional[int]:
    """Return the layer number of a ``;LAYER:<n>`` marker line.

    Returns None for ordinary lines and for markers whose number is not a
    non-negative integer.
    """
    if not line.startswith(LAYER_MARKER):
        return None
    match = _LAYER_NUMBER_RE.match(line)
    if not match:
        return None
    number = int(match.group(1))
    if number < 0:
        return None
    return number


def is_layer_marker(line: str) -> bool:
    return layer_number(line) is not None


def parse_command(line: str) -> GCodeCommand:
    """Parse a single G-code line into its command word and axis values."""
    # Remove comments
    comment = None
    if ';' in line:
        line, comment = line.split(';', 1)
        comment = comment.strip()

    parts = line.split()
    if not parts:
        return GCodeCommand(command='', comment=comment)

    command = _normalize_command(parts[0])
    values: Dict[str, float] = {}
    for part in parts[1:]:
        axis = part[0].upper()
        if axis not in 'XYZEF' or axis in values:
            continue
        match = _NUMBER_PREFIX_RE.match(part, 1)
        if match:
            values[axis] = float(match.group(0))

    return GCodeCommand(
        command=command,
        x=values.get('X'), y=values.get('Y'), z=values.get('Z'),
        e=values.get('E'), f=values.get('F'),
        comment=comment
    )


def _normalize_command(word: str) -> str:
    """Upper-case a command word and drop leading zeros (``g01`` -> ``G1``)."""
    word = word.upper()
    letter, number = word[:1], word[1:]
    if number.isdigit():
        return f"{letter}{int(number)}"
    return word


class _LayerScanner:
    """Incremental state of a layer scan over a list of lines."""

    def __init__(self, name: str):
        self.name = name
        self.layer_map: Dict[int, List[int]] = {}
        self.current: Optional[int] = None
        self.first_marker: Optional[int] = None
        self.warnings: List[str] = []

    def feed(self, index: int, line: str) -> None:
        number = layer_number(line)
        if number is None:
            if line.startswith(LAYER_MARKER):
                self._warn(f"ignoring layer marker without a valid layer number at line {index}: {line!r}")
            return

        # Close the previous layer
        if self.current is not None:
            self.layer_map[self.current][1] = index - 1

        if number in self.layer_map:
            self._warn(f"layer {number} appears more than once (again at line {index})")
        elif self.current is not None and number < self.current:
            self._warn(f"layer {number} at line {index} follows layer {self.current}")

        if self.first_marker is None:
            self.first_marker = index
        self.current = number
        self.layer_map[number] = [index, index]

    def finish(self, text: str, lines: List[str]) -> Program:
        if self.current is not None:
            self.layer_map[self.current][1] = len(lines) - 1

        if self.layer_map:
            layer_count = max(self.layer_map) + 1
        else:
            layer_count = 0
            self._warn("no ;LAYER: markers found, the file cannot be placed on the timeline")

        return Program(
            name=self.name,
            text=text,
            lines=tuple(lines),
            layer_map={n: (start, end) for n, (start, end) in self.layer_map.items()},
            layer_count=layer_count,
            warnings=tuple(self.warnings),
            first_marker=self.first_marker
        )

    def _warn(self, message: str) -> None:
        logger.warning("%s: %s", self.name, message)
        self.warnings.append(message)


class GCodeParser:
    """Parser turning G-code text into :class:`Program` instances."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE,
                 large_file_threshold: int = LARGE_FILE_THRESHOLD):
        """
        Initialize parser.

        Args:
            chunk_size: Number of lines scanned between two yields
            large_file_threshold: Text length above which parse_text scans in chunks
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.chunk_size = chunk_size
        self.large_file_threshold = large_file_threshold

    def parse_file(self, filepath: str) -> Program:
        """Read a G-code file and parse it.

        Raises:
            InputError: If the file cannot be read or is not valid UTF-8
        """
        try:
            with open(filepath, 'r', encoding='utf-8', newline='') as f:
                text = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise InputError(f"Error reading gcode file {filepath}: {e}", file_path=str(filepath)) from e

        name = Path(filepath).name
        return self.parse_text(text, name)

    def parse_text(self, text: str, name: str) -> Program:
        """Parse G-code text in one go and return the finished program."""
        if len(text) > self.large_file_threshold:
            logger.debug("%s: %d characters, scanning in chunks of %d lines",
                         name, len(text), self.chunk_size)
            chunk_size = self.chunk_size
        else:
            chunk_size = None

        program = _run_to_completion(self.iter_parse(text, name, chunk_size))
        logger.info("Parsed %s: %d lines, %d layers", name, len(program.lines), program.layer_count)
        return program

    def iter_parse(self, text: str, name: str,
                   chunk_size: Optional[int] = None) -> Generator[int, None, Program]:
        """Parse G-code text chunk by chunk.

        Yields the number of lines scanned so far after each chunk; the
        finished :class:`Program` is the generator's return value. Dropping
        the generator before it finishes leaves nothing behind.

        Args:
            text: Raw G-code text
            name: Display name of the source
            chunk_size: Lines per chunk, defaults to the parser's chunk size
        """
        if text is None:
            raise InputError(f"No content for {name}", file_path=name)

        chunk_size = chunk_size or self.chunk_size
        lines = split_lines(text)
        scanner = _LayerScanner(name)

        for start in range(0, len(lines), chunk_size):
            end = min(start + chunk_size, len(lines))
            for index in range(start, end):
                scanner.feed(index, lines[index])
            yield end

        return scanner.finish(text, lines)


def _run_to_completion(parse: Generator[int, None, Program]) -> Program:
    while True:
        try:
            next(parse)
        except StopIteration as done:
            return done.value


def parse_gcode(text: str, name: str, chunk_size: Optional[int] = None) -> Program:
    """Parse G-code text into a :class:`Program`.

    Args:
        text: Raw G-code text
        name: Display name (usually the source file name)
        chunk_size: Force chunked scanning with this many lines per chunk

    Returns:
        The parsed program; without layer markers its layer_count is 0
    """
    if chunk_size is None:
        return GCodeParser().parse_text(text, name)

    parser = GCodeParser(chunk_size=chunk_size)
    return _run_to_completion(parser.iter_parse(text, name))


def parse_file(filepath: str) -> Program:
    """Read and parse a G-code file."""
    return GCodeParser().parse_file(filepath)
