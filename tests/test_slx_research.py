import io
import struct

import pytest

from slx_log import (DEFAULT_SL2_HEADER, DEFAULT_SL3_HEADER, FORMAT_SL2, HEADER_SIZE,
                     SL2_FRAME_HEADER_SIZE, ChannelType, InvalidInputError, encode_log)
from slx_research import interpret_bytes, print_research, research_file, research_values


def test_interpret_bytes() -> None:
    value = interpret_bytes(b'AB\x00\x01', 12, 7)
    assert value.as_string == 'AB..'
    assert value.short_a == 0x4241
    assert value.short_b == 0x0100
    assert value.as_int32 == 0x01004241
    assert value.as_float32 == pytest.approx(struct.unpack('<f', b'AB\x00\x01')[0])
    assert value.frame_index == 12
    assert value.channel == 7

    assert interpret_bytes(b'\x00\x00\x00\x00', 0, 2).channel is ChannelType.DOWNSCAN


def test_research_frame_index_offset_in_sl2(tmp_path, track) -> None:
    path = tmp_path / 'track.sl2'
    path.write_bytes(encode_log(track, DEFAULT_SL2_HEADER))
    frame_size = SL2_FRAME_HEADER_SIZE + 5

    values = research_file(path, 36)

    assert list(values) == [HEADER_SIZE + k * frame_size + 36 for k in range(len(track))]
    assert [v.as_int32 for v in values.values()] == [f.frame_index for f in track]
    assert [v.channel for v in values.values()] == [f.channel for f in track]


def test_research_sl3_uses_sl3_layout(tmp_path, track) -> None:
    path = tmp_path / 'track.sl3'
    path.write_bytes(encode_log(track, DEFAULT_SL3_HEADER))
    values = research_file(path, 16)
    assert [v.as_int32 for v in values.values()] == [f.frame_index for f in track]


def test_research_stops_at_truncated_frame(track) -> None:
    data = encode_log(track, DEFAULT_SL2_HEADER)
    frame_size = SL2_FRAME_HEADER_SIZE + 5
    cut = HEADER_SIZE + 9 * frame_size + 20

    values = list(research_values(io.BytesIO(data[:cut]), HEADER_SIZE, 36, FORMAT_SL2))

    assert len(values) == 9


def test_research_offset_past_frame_end(track) -> None:
    data = encode_log(track[:1], DEFAULT_SL2_HEADER)
    assert list(research_values(io.BytesIO(data), HEADER_SIZE, 500, FORMAT_SL2)) == []


@pytest.mark.parametrize('offset, width', [(-1, 4), (0, 2)])
def test_research_rejects_bad_arguments(offset, width) -> None:
    with pytest.raises(InvalidInputError):
        list(research_values(io.BytesIO(b''), HEADER_SIZE, offset, FORMAT_SL2, width))


def test_print_research_filters_rows(capsys, track) -> None:
    values = dict(research_values(io.BytesIO(encode_log(track, DEFAULT_SL2_HEADER)),
                                  HEADER_SIZE, 36, FORMAT_SL2))
    print_research(values, channels=[ChannelType.DOWNSCAN], index_from=1, index_to=2)

    lines = capsys.readouterr().out.splitlines()
    rows = lines[2:]
    assert len(rows) == 2
    assert all('DownScan' in row for row in rows)
