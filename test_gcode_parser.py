"""Tests for the layer-indexing G-code parser."""

import pytest

from conftest import make_gcode
from gcode_parser import (GCodeParser, layer_number, parse_command, parse_file,
                          parse_gcode, split_lines)
from mixer_exceptions import InputError


class TestSplitLines:

    def test_split_when_lf_then_keeps_trailing_empty_line(self):
        assert split_lines("a\nb\n") == ["a", "b", ""]

    def test_split_when_crlf_then_strips_carriage_returns(self):
        assert split_lines("a\r\nb\r\nc") == ["a", "b", "c"]

    def test_split_when_lone_cr_inside_line_then_kept(self):
        assert split_lines("a\rb\nc") == ["a\rb", "c"]


class TestLayerNumber:

    def test_marker_with_integer(self):
        assert layer_number(";LAYER:12") == 12

    def test_marker_with_trailing_text_uses_leading_integer(self):
        assert layer_number(";LAYER:3 something") == 3

    def test_non_integer_marker_is_ignored(self):
        assert layer_number(";LAYER:abc") is None

    def test_negative_marker_is_ignored(self):
        assert layer_number(";LAYER:-1") is None

    def test_other_lines(self):
        assert layer_number("G1 X1") is None
        assert layer_number(";LAYER_COUNT:10") is None


class TestParse:

    def test_parse_when_layers_present_then_maps_line_ranges(self):
        program = parse_gcode("head\n;LAYER:0\nG1 X1\n;LAYER:1\nG1 X2", "t.gcode")

        assert program.name == "t.gcode"
        assert program.lines == ("head", ";LAYER:0", "G1 X1", ";LAYER:1", "G1 X2")
        assert program.layer_map == {0: (1, 2), 1: (3, 4)}
        assert program.layer_count == 2
        assert program.header_lines() == ["head"]
        assert program.warnings == ()

    def test_parse_when_crlf_then_same_ranges_as_lf(self):
        lf = parse_gcode("h\n;LAYER:0\nx\n;LAYER:1\ny\n", "t")
        crlf = parse_gcode("h\r\n;LAYER:0\r\nx\r\n;LAYER:1\r\ny\r\n", "t")

        assert crlf.lines == lf.lines
        assert crlf.layer_map == lf.layer_map == {0: (1, 2), 1: (3, 5)}

    def test_parse_when_no_markers_then_zero_layers_and_warning(self):
        program = parse_gcode("G28\nG1 X1 E1", "flat.gcode")

        assert program.layer_count == 0
        assert program.layer_map == {}
        assert not program.has_layers
        assert program.header_lines() == ["G28", "G1 X1 E1"]
        assert len(program.warnings) == 1

    def test_parse_when_invalid_marker_then_no_layer_transition(self):
        program = parse_gcode("h\n;LAYER:0\na\n;LAYER:abc\nb", "t")

        assert program.layer_map == {0: (1, 4)}
        assert program.layer_count == 1
        assert any("abc" in w for w in program.warnings)

    def test_parse_when_layers_out_of_order_then_warns(self):
        program = parse_gcode(";LAYER:1\na\n;LAYER:0\nb", "t")

        assert program.layer_map == {1: (0, 1), 0: (2, 3)}
        assert program.layer_count == 2
        assert len(program.warnings) == 1

    def test_parse_when_layer_repeats_then_warns_and_keeps_last(self):
        program = parse_gcode(";LAYER:0\na\n;LAYER:0\nb", "t")

        assert program.layer_map == {0: (2, 3)}
        assert len(program.warnings) == 1

    def test_parse_when_layer_repeats_then_header_stops_at_first_marker(self):
        program = parse_gcode(";H\nM104 S200\n;LAYER:0\nG1 X1 E1\nM104 S250\n;LAYER:0\nG1 X2 E2", "t")

        assert program.first_layer_line == 2
        assert program.header_lines() == [";H", "M104 S200"]
        assert program.layer_map == {0: (5, 6)}

    def test_program_is_hashable(self):
        text = ";LAYER:0\nG1 X1 E1"
        first = parse_gcode(text, "t")
        second = parse_gcode(text, "t")

        assert first == second
        assert hash(first) == hash(second)
        assert {first: 1}[second] == 1

    def test_layer_count_uses_highest_layer_number(self):
        program = parse_gcode(";LAYER:0\na\n;LAYER:4\nb", "t")
        assert program.layer_count == 5

    def test_layers_tile_the_body_without_gaps(self, program_a):
        ranges = [program_a.layer_map[n] for n in range(program_a.layer_count)]

        assert ranges[0][0] == program_a.first_layer_line
        for (_, end), (next_start, _) in zip(ranges, ranges[1:]):
            assert end + 1 == next_start
        assert ranges[-1][1] == len(program_a.lines) - 1
        for start, end in ranges:
            assert 0 <= start <= end < len(program_a.lines)

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 64, 100000])
    def test_parse_is_independent_of_chunk_size(self, chunk_size):
        text = make_gcode(25) + "\n;LAYER:oops\n;LAYER:3\nG1 X1"

        assert parse_gcode(text, "t", chunk_size=chunk_size) == parse_gcode(text, "t")

    def test_large_input_path_matches_small_input_path(self):
        text = make_gcode(12)
        chunked = GCodeParser(chunk_size=5, large_file_threshold=10).parse_text(text, "t")

        assert chunked == parse_gcode(text, "t")


class TestIterParse:

    def test_iter_parse_yields_progress_then_returns_program(self):
        text = "\n".join(["h"] + [f";LAYER:{n}" for n in range(9)])  # 10 lines
        parse = GCodeParser(chunk_size=4).iter_parse(text, "t")

        progress = []
        with pytest.raises(StopIteration) as done:
            while True:
                progress.append(next(parse))

        assert progress == [4, 8, 10]
        assert done.value.value.layer_count == 9

    def test_iter_parse_can_be_abandoned(self):
        parse = GCodeParser(chunk_size=1).iter_parse(make_gcode(3), "t")
        next(parse)
        parse.close()


class TestProgram:

    def test_line_range_when_layers_missing_then_falls_back_to_file_bounds(self):
        program = parse_gcode("h\n;LAYER:2\na\n;LAYER:3\nb", "t")

        assert program.line_range(2, 3) == (1, 4)
        assert program.line_range(0, 2) == (0, 2)
        assert program.line_range(3, 7) == (3, 4)

    def test_extrusion_mode_follows_last_mode_command(self):
        program = parse_gcode("M82\n;LAYER:0\nM83 ; relative\nG1 E1\n;LAYER:1\nG1 E1", "t")

        assert not program.is_relative_extrusion_at(1)
        assert program.is_relative_extrusion_at(3)
        assert program.is_relative_extrusion_at(5)

    def test_extrusion_mode_defaults_to_absolute(self):
        program = parse_gcode(";LAYER:0\nG1 E1", "t")
        assert not program.is_relative_extrusion_at(1)


class TestParseCommand:

    def test_parse_move_with_comment(self):
        cmd = parse_command("G1 X10.5 Y-20 E1.25 F1800 ; perimeter")

        assert cmd.command == "G1"
        assert cmd.is_move
        assert (cmd.x, cmd.y, cmd.z, cmd.e, cmd.f) == (10.5, -20.0, None, 1.25, 1800.0)
        assert cmd.comment == "perimeter"

    def test_parse_lowercase_and_leading_zero(self):
        cmd = parse_command("g01 x1 e.5")

        assert cmd.command == "G1"
        assert cmd.x == 1.0
        assert cmd.e == 0.5

    def test_parse_comment_only_line(self):
        cmd = parse_command(";TYPE:WALL-OUTER")

        assert cmd.command == ""
        assert not cmd.is_move
        assert cmd.comment == "TYPE:WALL-OUTER"

    def test_parse_non_move(self):
        assert parse_command("M104 S210").command == "M104"


class TestParseFile:

    def test_parse_file_uses_file_name(self, tmp_path):
        path = tmp_path / "part.gcode"
        path.write_text(make_gcode(3), encoding="utf-8")

        program = parse_file(str(path))

        assert program.name == "part.gcode"
        assert program.layer_count == 3

    def test_parse_file_keeps_crlf_handling(self, tmp_path):
        path = tmp_path / "crlf.gcode"
        path.write_bytes(b"h\r\n;LAYER:0\r\nG1 X1\r\n")

        program = parse_file(str(path))

        assert program.lines == ("h", ";LAYER:0", "G1 X1", "")

    def test_parse_file_when_missing_then_raises_input_error(self, tmp_path):
        with pytest.raises(InputError):
            parse_file(str(tmp_path / "missing.gcode"))

    def test_parse_file_when_not_utf8_then_raises_input_error(self, tmp_path):
        path = tmp_path / "binary.gcode"
        path.write_bytes(b"\xff\xfe\xfa;LAYER:0")

        with pytest.raises(InputError) as excinfo:
            parse_file(str(path))
        assert "binary.gcode" in excinfo.value.get_ui_message()
