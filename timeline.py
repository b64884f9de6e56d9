"""Timeline of layer ranges assigned to source programs.

A timeline is a tuple of :class:`Segment` objects sorted by ``start_layer``.
Each segment claims an inclusive layer range of one source program. The
functions in this module never modify their input; they return a new
timeline that is sorted and free of overlaps, or raise and leave the
caller's timeline as it was.
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from gcode_parser import Program
from mixer_exceptions import InvariantViolation, ValidationError

logger = logging.getLogger(__name__)

# Layer span used for an empty program store
DEFAULT_TOTAL_LAYERS = 100


@dataclass(frozen=True)
class Segment:
    """A layer range of one program placed on the timeline."""
    program_id: str
    start_layer: int
    end_layer: int
    segment_id: Optional[str] = None

    def layer_count(self) -> int:
        """Return the number of layers in this segment."""
        return self.end_layer - self.start_layer + 1

    def overlaps(self, other: 'Segment') -> bool:
        return self.start_layer <= other.end_layer and self.end_layer >= other.start_layer


Timeline = Tuple[Segment, ...]


def sort_segments(segments: Iterable[Segment]) -> Timeline:
    return tuple(sorted(segments, key=lambda s: s.start_layer))


def total_layers(programs: Iterable[Program]) -> int:
    """Return the layer span of the timeline for a set of programs."""
    return max((p.layer_count for p in programs), default=0) or DEFAULT_TOTAL_LAYERS


def boundaries(timeline: Sequence[Segment]) -> List[int]:
    """Return the draggable boundary layers of a timeline.

    The list holds the first segment's start, the end of every segment but
    the last (the seams), and the last segment's end.
    """
    ordered = sort_segments(timeline)
    if not ordered:
        return []
    points = [ordered[0].start_layer]
    points.extend(seg.end_layer for seg in ordered[:-1])
    points.append(ordered[-1].end_layer)
    return points


def segment_at(timeline: Sequence[Segment], layer: int) -> Optional[int]:
    """Return the index of the segment covering ``layer``, or None."""
    for index, seg in enumerate(sort_segments(timeline)):
        if seg.start_layer <= layer <= seg.end_layer:
            return index
    return None


def validate_timeline(timeline: Sequence[Segment],
                      program_ids: Optional[Iterable[str]] = None,
                      total_layers: Optional[int] = None) -> None:
    """Check the timeline invariants.

    Args:
        timeline: Segments in any order
        program_ids: Known program ids; unchecked when None
        total_layers: Layer span every segment must fit in; unchecked when None

    Raises:
        InvariantViolation: On an inverted or out-of-range layer range, an
            overlap between neighbours or a reference to an unknown program
    """
    ordered = sort_segments(timeline)
    known = set(program_ids) if program_ids is not None else None

    for index, seg in enumerate(ordered):
        if seg.start_layer < 0 or seg.end_layer < seg.start_layer:
            raise InvariantViolation(
                f"Segment {index} has invalid range {seg.start_layer}-{seg.end_layer}")
        if total_layers is not None and seg.end_layer > total_layers - 1:
            raise InvariantViolation(
                f"Segment {index} ends at layer {seg.end_layer}, past the last layer {total_layers - 1}")
        if known is not None and seg.program_id not in known:
            raise InvariantViolation(
                f"Segment {index} references unknown program {seg.program_id}")
        if index + 1 < len(ordered) and seg.overlaps(ordered[index + 1]):
            nxt = ordered[index + 1]
            raise InvariantViolation(
                f"Segments {index} ({seg.start_layer}-{seg.end_layer}) and {index + 1} "
                f"({nxt.start_layer}-{nxt.end_layer}) overlap")


def _commit(candidate: Sequence[Segment], total_layers: Optional[int] = None,
            program_ids: Optional[Iterable[str]] = None) -> Timeline:
    result = sort_segments(candidate)
    validate_timeline(result, program_ids, total_layers)
    return result


def resolve_overlaps(segments: Sequence[Segment], total_layers: int) -> Timeline:
    """Push overlapping neighbours apart.

    A single greedy pass shifts either the upper segment up or the lower
    segment down by the overlap, preferring whichever preserves more of the
    original sizes. A second pass turns inverted ranges into single layers
    and enforces ``next.start_layer > current.end_layer`` for anything left.
    Sizes are preserved on a best-effort basis only.

    Args:
        segments: Segments in any order
        total_layers: Number of layers available on the timeline

    Returns:
        Sorted, pairwise non-overlapping segments
    """
    ordered = list(sort_segments(segments))

    # First pass: push up or down
    for i in range(len(ordered) - 1):
        current = ordered[i]
        nxt = ordered[i + 1]
        if current.end_layer < nxt.start_layer:
            continue

        overlap_amount = current.end_layer - nxt.start_layer + 1
        push_up_space = total_layers - 1 - nxt.end_layer
        push_down_space = current.start_layer

        push_up_change = min(overlap_amount, push_up_space)
        push_down_change = min(overlap_amount, push_down_space)

        if push_up_change >= overlap_amount or (
                push_up_change >= push_down_change and nxt.end_layer + push_up_change < total_layers):
            ordered[i + 1] = replace(
                nxt,
                start_layer=nxt.start_layer + overlap_amount,
                end_layer=min(total_layers - 1, nxt.end_layer + overlap_amount)
            )
        else:
            ordered[i] = replace(
                current,
                start_layer=max(0, current.start_layer - overlap_amount),
                end_layer=current.end_layer - overlap_amount
            )

    # Second pass: at least one layer per segment, hard gap for leftovers.
    # A push down above can reorder neighbours, so sort again first.
    ordered = list(sort_segments(ordered))
    for i in range(len(ordered)):
        seg = ordered[i]
        if seg.end_layer < seg.start_layer:
            seg = ordered[i] = replace(seg, end_layer=seg.start_layer)

        if i < len(ordered) - 1 and seg.end_layer >= ordered[i + 1].start_layer:
            nxt = ordered[i + 1]
            ordered[i + 1] = replace(
                nxt,
                start_layer=seg.end_layer + 1,
                end_layer=max(seg.end_layer + 1, nxt.end_layer)
            )

    return tuple(ordered)


def assign(program_id: str, program: Program, timeline: Sequence[Segment],
           total_layers: int, segment_id: Optional[str] = None) -> Timeline:
    """Place a program on the timeline.

    The first program covers all of its layers. Every later program takes
    the lower half of the current bottom segment, which keeps its upper half.

    Raises:
        ValidationError: If the program has no layers
        InvariantViolation: If the new segment cannot fit into ``total_layers``
    """
    if not program.has_layers:
        raise ValidationError(f"{program.name} has no ;LAYER: markers", field_name="program")

    if not timeline:
        logger.debug("Assigning %s to layers 0-%d", program.name, program.layer_count - 1)
        return _commit([Segment(program_id, 0, program.layer_count - 1, segment_id)], total_layers)

    ordered = list(sort_segments(timeline))
    bottom = ordered[0]
    midpoint = bottom.start_layer + (bottom.end_layer - bottom.start_layer) // 2

    ordered[0] = replace(bottom, start_layer=midpoint + 1)
    ordered.append(Segment(program_id, 0, midpoint, segment_id))
    logger.debug("Assigning %s to layers 0-%d", program.name, midpoint)

    return _commit(resolve_overlaps(ordered, total_layers), total_layers)


def update_boundary(timeline: Sequence[Segment], boundary_index: int,
                    new_layer: int, total_layers: int) -> Timeline:
    """Move one boundary of the timeline to ``new_layer``.

    Boundary 0 is the first segment's start and the last boundary is the
    last segment's end. Boundary ``i`` in between is the seam where segment
    ``i - 1`` ends and segment ``i`` starts; both move together.

    Raises:
        ValidationError: If ``boundary_index`` does not name a boundary
        InvariantViolation: If the segments no longer fit into ``total_layers``
    """
    ordered = list(sort_segments(timeline))
    if not ordered:
        return ()

    last_boundary = len(ordered)
    if not 0 <= boundary_index <= last_boundary:
        raise ValidationError(
            f"Boundary index {boundary_index} is outside 0-{last_boundary}", field_name="boundary_index")

    new_layer = max(0, min(total_layers - 1, new_layer))

    if boundary_index == 0:
        ordered[0] = replace(ordered[0], start_layer=new_layer)
    elif boundary_index == last_boundary:
        ordered[-1] = replace(ordered[-1], end_layer=new_layer)
    else:
        ordered[boundary_index - 1] = replace(ordered[boundary_index - 1], end_layer=new_layer)
        ordered[boundary_index] = replace(ordered[boundary_index], start_layer=new_layer)

    return _commit(resolve_overlaps(ordered, total_layers), total_layers)


def remove_segment(timeline: Sequence[Segment], index: int) -> Timeline:
    """Remove a segment and let a neighbour absorb its layers.

    The next segment grows down over a removed first segment; otherwise the
    previous segment grows up over the removed one.

    Raises:
        ValidationError: If ``index`` is outside the timeline
    """
    ordered = list(sort_segments(timeline))
    if not 0 <= index < len(ordered):
        raise ValidationError(f"Segment index {index} is outside the timeline", field_name="index")

    removed = ordered.pop(index)
    if not ordered:
        return ()

    if index == 0:
        ordered[0] = replace(ordered[0], start_layer=removed.start_layer)
    else:
        # Covers both the last and an interior segment
        ordered[index - 1] = replace(ordered[index - 1], end_layer=removed.end_layer)

    return _commit(ordered)


def swap_program(timeline: Sequence[Segment], target_index: int, source_program_id: str,
                 program_ids: Optional[Iterable[str]] = None) -> Timeline:
    """Return a timeline where segment ``target_index`` uses another program.

    Raises:
        ValidationError: If ``target_index`` is outside the timeline
        InvariantViolation: If ``program_ids`` is given and does not contain
            ``source_program_id``
    """
    ordered = list(sort_segments(timeline))
    if not 0 <= target_index < len(ordered):
        raise ValidationError(
            f"Segment index {target_index} is outside the timeline", field_name="target_index")

    ordered[target_index] = replace(ordered[target_index], program_id=source_program_id)
    return _commit(ordered, program_ids=program_ids)


def can_remove_program(program_id: str, timeline: Sequence[Segment]) -> bool:
    """Return False while any segment still references ``program_id``."""
    return all(seg.program_id != program_id for seg in timeline)


def distribute_segments(timeline: Sequence[Segment], total_layers: int) -> Timeline:
    """Pack segments from layer 0 upward, keeping their order.

    Sizes are kept when they fit into ``total_layers``; otherwise each one
    is scaled down proportionally, never below a single layer.
    """
    ordered = sort_segments(timeline)
    if len(ordered) <= 1:
        return ordered

    total_size = sum(seg.layer_count() for seg in ordered)
    scale = total_layers / total_size if total_size > total_layers else 1

    result = []
    current_layer = 0
    for seg in ordered:
        size = max(1, int(seg.layer_count() * scale))
        result.append(replace(seg, start_layer=current_layer, end_layer=current_layer + size - 1))
        current_layer += size

    return _commit(result, total_layers)


def used_program_ids(timeline: Sequence[Segment]) -> List[str]:
    """Return the distinct program ids of a timeline in layer order."""
    seen: List[str] = []
    for seg in sort_segments(timeline):
        if seg.program_id not in seen:
            seen.append(seg.program_id)
    return seen


def describe(timeline: Sequence[Segment], programs: Mapping[str, Program]) -> List[str]:
    """Return one human readable line per segment."""
    rows = []
    for index, seg in enumerate(sort_segments(timeline)):
        program = programs.get(seg.program_id)
        name = program.name if program is not None else f"<missing {seg.program_id}>"
        rows.append(f"{index}: layers {seg.start_layer}-{seg.end_layer} ({seg.layer_count()}) {name}")
    return rows
