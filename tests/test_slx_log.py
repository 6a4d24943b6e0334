import math
import struct

import pytest

from slx_log import (DEFAULT_SL2_HEADER, DEFAULT_SL3_HEADER, HEADER_SIZE, SL2_FIELDS,
                     SL2_FRAME_HEADER_SIZE, SL3_FRAME_HEADER_SIZE, ChannelType, Header,
                     InvalidInputError, LogReadError, LogWriteError, channel_summary,
                     encode_log, latitude_to_mercator, longitude_to_mercator, mercator_to_latitude,
                     mercator_to_longitude, parse_channel, parse_log, read_log, write_log)


def test_mercator_conversion_uses_polar_radius() -> None:
    radius = 6356752.3142
    assert mercator_to_longitude(0) == 0.0
    assert mercator_to_latitude(0) == 0.0
    assert mercator_to_longitude(radius * math.pi / 2) == pytest.approx(90.0)
    northing = radius * math.log(math.tan(math.pi / 4 + math.radians(45.0) / 2))
    assert mercator_to_latitude(northing) == pytest.approx(45.0)


def test_mercator_roundtrip_southern_and_western_hemisphere() -> None:
    lat, lon = -33.8688, -151.2093
    assert mercator_to_latitude(latitude_to_mercator(lat)) == pytest.approx(lat, abs=1e-5)
    assert mercator_to_longitude(longitude_to_mercator(lon)) == pytest.approx(lon, abs=1e-5)


def test_latitude_to_mercator_clips_poles() -> None:
    assert latitude_to_mercator(-90.0) == latitude_to_mercator(-91.0)
    assert latitude_to_mercator(90.0) > 0


def test_parse_channel() -> None:
    assert parse_channel('5') is ChannelType.SIDESCAN_COMPOSITE
    assert parse_channel(' 9 ') is ChannelType.THREE_D
    with pytest.raises(InvalidInputError):
        parse_channel('7')
    with pytest.raises(InvalidInputError):
        parse_channel('x')


def test_sl2_encode_then_parse_keeps_frame_fields(track) -> None:
    data = encode_log(track, DEFAULT_SL2_HEADER)
    log = parse_log(data)

    assert log.header == DEFAULT_SL2_HEADER
    assert len(log.frames) == len(track)
    for original, parsed in zip(track, log.frames):
        assert parsed.channel is original.channel
        assert parsed.frame_index == original.frame_index
        assert parsed.sounded_data == original.sounded_data
        assert parsed.depth_m == pytest.approx(original.depth_m, rel=1e-6)
        assert parsed.lower_limit_m == pytest.approx(original.lower_limit_m, rel=1e-6)
        assert parsed.latitude == pytest.approx(original.latitude, abs=1e-4)
        assert parsed.longitude == pytest.approx(original.longitude, abs=1e-4)
        assert parsed.time_offset_ms == original.time_offset_ms


def test_sl3_layout_places_sounded_data_after_168_bytes(make_frame) -> None:
    frame = make_frame(ChannelType.DOWNSCAN, 7, sounded_data=b'\xAA\xBB')
    data = encode_log([frame], DEFAULT_SL3_HEADER)

    assert len(data) == HEADER_SIZE + SL3_FRAME_HEADER_SIZE + 2
    assert data[HEADER_SIZE + SL3_FRAME_HEADER_SIZE:] == b'\xAA\xBB'
    assert struct.unpack_from('<I', data, HEADER_SIZE + 16)[0] == 7
    parsed = parse_log(data).frames[0]
    assert parsed.channel is ChannelType.DOWNSCAN
    assert parsed.frame_index == 7


def test_encode_log_links_frames(make_frame) -> None:
    frames = [make_frame(ChannelType.PRIMARY, 0), make_frame(ChannelType.DOWNSCAN, 0),
              make_frame(ChannelType.PRIMARY, 1)]
    data = encode_log(frames, DEFAULT_SL2_HEADER)
    size = SL2_FRAME_HEADER_SIZE + 4
    third = HEADER_SIZE + 2 * size

    def field(pos, name):
        off, fmt = SL2_FIELDS[name]
        return struct.unpack_from(fmt, data, pos + off)[0]

    assert field(third, 'frame_offset') == third
    assert field(third, 'this_frame_size') == size
    assert field(third, 'prev_frame_size') == size
    assert field(third, 'last_primary_offset') == third
    assert field(third, 'last_downscan_offset') == HEADER_SIZE + size
    assert field(third, 'last_secondary_offset') == 0


def test_parse_log_keeps_complete_frames_of_truncated_file(track) -> None:
    data = encode_log(track, DEFAULT_SL2_HEADER)
    log = parse_log(data[:-3])
    assert len(log.frames) == len(track) - 1


def test_parse_log_skips_unknown_channels(make_frame) -> None:
    frames = [make_frame(ChannelType.PRIMARY, 0), make_frame(ChannelType.DOWNSCAN, 0)]
    data = bytearray(encode_log(frames, DEFAULT_SL2_HEADER))
    off, fmt = SL2_FIELDS['channel']
    struct.pack_into(fmt, data, HEADER_SIZE + off, 7)

    log = parse_log(bytes(data))
    assert [f.channel for f in log.frames] == [ChannelType.DOWNSCAN]


def test_parse_log_rejects_slg_and_short_files() -> None:
    with pytest.raises(LogReadError):
        parse_log(struct.pack('<HHHH', 1, 0, 3200, 0))
    with pytest.raises(LogReadError):
        parse_log(b'\x02\x00')


def test_creation_time_comes_from_first_frame(make_frame) -> None:
    frame = make_frame(timestamp_raw=1500000000)
    log = parse_log(encode_log([frame], DEFAULT_SL2_HEADER))
    assert log.creation_time.year == 2017


def test_encode_log_rejects_oversized_frame(make_frame) -> None:
    with pytest.raises(LogWriteError):
        encode_log([make_frame(sounded_data=bytes(70000))], DEFAULT_SL2_HEADER)
    with pytest.raises(LogWriteError):
        encode_log([make_frame()], Header(1))


def test_read_and_write_log_files(tmp_path, track) -> None:
    path = tmp_path / 'track.sl3'
    write_log(path, track, DEFAULT_SL3_HEADER)
    log = read_log(path)
    assert log.header.format_name == 'sl3'
    assert len(log.frames) == len(track)

    with pytest.raises(LogReadError):
        read_log(tmp_path / 'missing.sl2')


def test_channel_summary(track) -> None:
    summary = channel_summary(track)
    assert list(summary) == [ChannelType.PRIMARY, ChannelType.DOWNSCAN]
    assert summary[ChannelType.DOWNSCAN]['first_index'] == 0
    assert summary[ChannelType.DOWNSCAN]['last_index'] == 4
    assert summary[ChannelType.DOWNSCAN]['count'] == 5
