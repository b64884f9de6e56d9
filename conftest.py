import pytest

from gcode_parser import parse_gcode

DEFAULT_HEADER = [
    ";FLAVOR:Marlin",
    ";Generated with Test Slicer",
    "M140 S60",
    "M104 S210",
    "M190 S60",
    "M109 S210",
    "M82 ;absolute extrusion mode",
    ";retraction_amount = 5",
    "G28 ;Home",
    "G92 E0",
]


def make_gcode(layer_count, header=None, e_start=0.0, e_per_move=0.5,
               moves_per_layer=2, layer_height=0.2):
    """Build Cura-style G-code text with absolute extrusion."""
    lines = list(DEFAULT_HEADER if header is None else header)
    e = e_start
    for n in range(layer_count):
        lines.append(f";LAYER:{n}")
        lines.append(f"G0 X10 Y10 Z{(n + 1) * layer_height:.1f}")
        for i in range(moves_per_layer):
            e += e_per_move
            lines.append(f"G1 X{20 + i} Y10 E{e:.5f}")
    return "\n".join(lines)


@pytest.fixture
def program_a():
    """Ten layer program."""
    return parse_gcode(make_gcode(10), "a.gcode")


@pytest.fixture
def program_b():
    """Five layer program with its own temperatures."""
    header = [";FLAVOR:Marlin", "M104 S240", "M109 S240", "M106 S255", "M82", "G92 E0"]
    return parse_gcode(make_gcode(5, header=header, e_start=100.0), "b.gcode")
