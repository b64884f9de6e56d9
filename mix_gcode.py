#!/usr/bin/env python3
"""
G-code Mixer - command line tool
Combines several Cura G-code files into one print, switching source file
at chosen layers.
"""

import argparse
import logging
import sys
from typing import List, Optional, Sequence

from gcode_merger import MergeConfig, merge_gcodes
from gcode_parser import GCodeParser
from mixer_exceptions import GCodeMixerException, ValidationError
from program_store import ProgramStore
from timeline import Segment, Timeline, assign, describe, resolve_overlaps, validate_timeline


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Merge G-code files layer by layer. The first file prints at the bottom.")
    parser.add_argument('files', nargs='+', help="Input G-code files, bottom to top")
    parser.add_argument('-o', '--output', default='merged.gcode', help="Output file (default: merged.gcode)")
    parser.add_argument('--switch-at', nargs='+', type=int, metavar='LAYER',
                        help="First layer of every file after the first (one value per seam)")
    parser.add_argument('--even', action='store_true',
                        help="Give every file an equal share of the layer range")
    parser.add_argument('--rebase-relative', action='store_true',
                        help="Rebase E values even in relative extrusion (M83) sections")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    return parser


def timeline_from_switch_layers(program_ids: Sequence[str], switch_layers: Sequence[int],
                                total_layers: int) -> Timeline:
    """Build a timeline where file ``i + 1`` starts at ``switch_layers[i]``.

    Raises:
        ValidationError: If the number of layers does not match the seams
    """
    if len(switch_layers) != len(program_ids) - 1:
        raise ValidationError(
            f"Expected {len(program_ids) - 1} switch layer(s), got {len(switch_layers)}",
            field_name="--switch-at")

    starts = [0] + list(switch_layers)
    ends = [layer - 1 for layer in switch_layers] + [total_layers - 1]
    segments = [Segment(pid, start, end) for pid, start, end in zip(program_ids, starts, ends)]
    timeline = resolve_overlaps(segments, total_layers)
    validate_timeline(timeline, program_ids, total_layers)
    return timeline


def even_switch_layers(count: int, total_layers: int) -> List[int]:
    """Return the switch layers that split ``total_layers`` into ``count`` equal parts."""
    return [i * total_layers // count for i in range(1, count)]


def stack_programs(store: ProgramStore, program_ids: Sequence[str]) -> Timeline:
    """Assign programs so the first one ends up at the bottom."""
    timeline: Timeline = ()
    total = store.total_layers()
    # New programs take the bottom half, so assign from the top down
    for program_id in reversed(program_ids):
        timeline = assign(program_id, store[program_id], timeline, total)
    return timeline


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s'
    )

    print("=" * 70)
    print("G-code Mixer")
    print("=" * 70)

    store = ProgramStore()
    gcode_parser = GCodeParser()
    program_ids = []

    try:
        print(f"\n[1/3] Parsing {len(args.files)} file(s)...")
        for path in args.files:
            program = gcode_parser.parse_file(path)
            print(f"  {program.name}: {len(program.lines)} lines, {program.layer_count} layers")
            for warning in program.warnings:
                print(f"    warning: {warning}")
            if not program.has_layers:
                raise ValidationError(f"{program.name} has no ;LAYER: markers", field_name=path)
            program_ids.append(store.add(program))

        print("\n[2/3] Building timeline...")
        total = store.total_layers()
        if args.switch_at:
            timeline = timeline_from_switch_layers(program_ids, args.switch_at, total)
        elif args.even:
            timeline = timeline_from_switch_layers(program_ids, even_switch_layers(len(program_ids), total), total)
        else:
            timeline = stack_programs(store, program_ids)
        for row in describe(timeline, store):
            print(f"  {row}")

        print("\n[3/3] Merging...")
        config = MergeConfig(respect_relative_extrusion=not args.rebase_relative)
        merged = merge_gcodes(timeline, store, config)
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(merged)
    except GCodeMixerException as e:
        print(f"\nERROR: {e.get_full_message()}", file=sys.stderr)
        return 1

    print(f"\nOutput written to: {args.output}")
    print("=" * 70)
    return 0


if __name__ == '__main__':
    sys.exit(main())
