"""
Lowrance SL2 / SL3 Sonar Log Parser
===================================
Binary format reader and writer for Lowrance sonar log files (.sl2, .sl3)
as written by HDS and Elite series chart plotters.

Refs:   https://wiki.openstreetmap.org/wiki/SL2
        https://github.com/kmpm/node-sl2format/blob/master/doc/sl2fileformat.md

FILE STRUCTURE
--------------
An 8-byte file header followed by sequential frames, one per sonar ping
and channel:

    Offset  Size   Type        Description
    ------  ----   ----        -----------
    0       2      uint16 LE   Format: 1 = slg, 2 = sl2, 3 = sl3
    2       2      uint16 LE   Hardware version (0 = HDS, 1 = Elite CHIRP, ...)
    4       2      uint16 LE   Block size (1970 = DownScan, 3200 = Sidescan)
    6       2      uint16 LE   Reserved
    8       ...    frames

FRAME HEADER
------------
Field            SL2 off  SL3 off  Type        Notes
-----            -------  -------  ----        -----
frame_offset       0        0      uint32 LE   Absolute offset of this frame
this_frame_size   28        8      uint16 LE   Bytes to the next frame
prev_frame_size   30       10      uint16 LE   Bytes to the previous frame
channel           32       12      uint16 LE   See CHANNEL_NAMES
packet_size       34       44      uint16 LE   Sounded data length
frame_index       36       16      uint32 LE   Shared between channels of one ping
upper_limit       40       20      float32 LE  Range window top (ft)
lower_limit       44       24      float32 LE  Range window bottom (ft)
frequency         50       52      uint8       See FREQUENCY_NAMES
creation_time     60       40      uint32 LE   Unix time in the first frame,
                                               ms since boot afterwards
depth             64       48      float32 LE  Water depth (ft)
keel_depth        68        -      float32 LE  Depth under keel (ft)
speed_gps        100       84      float32 LE  GPS speed (knots)
temperature      104       88      float32 LE  Water temperature (deg C)
longitude        108       92      int32 LE    Spherical mercator easting (m)
latitude         112       96      int32 LE    Spherical mercator northing (m)
water_speed      116      100      float32 LE  Paddle-wheel speed (knots)
course           120      104      float32 LE  Course over ground (rad)
altitude         124      108      float32 LE  GPS altitude (ft)
heading          128      112      float32 LE  Heading (rad)
flags            132      116      uint16 LE   Validity bits (undocumented)
time_offset      140      124      uint32 LE   ms since log creation
last_<channel>_offset  4..24  128..164  uint32 LE  Offset of the latest frame
                                               of each channel
sounded data     144      168      uint8[N]    N = packet_size

Mercator coordinates use the WGS84 polar Earth radius (6356752.3142 m).
SL3 channels 7 and 8 (HDS Live) use a 128-byte header and are skipped.
"""

import logging
import math
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from typing import List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SonarLogError(Exception):
    """Base class for sonar log errors."""


class InvalidInputError(SonarLogError, ValueError):
    """A value supplied to a transform or on the command line is malformed."""


class LogReadError(SonarLogError):
    """The log could not be read or is not an SL2/SL3 file."""


class LogWriteError(SonarLogError):
    """The frames could not be encoded or written."""


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FORMAT_SLG = 1
FORMAT_SL2 = 2
FORMAT_SL3 = 3

FORMAT_NAMES = {
    FORMAT_SLG: 'slg',
    FORMAT_SL2: 'sl2',
    FORMAT_SL3: 'sl3',
}

HEADER_SIZE = 8  # format(2) + hardware version(2) + block size(2) + reserved(2)
HEADER_STRUCT = struct.Struct('<HHHH')

SL2_FRAME_HEADER_SIZE = 144
SL3_FRAME_HEADER_SIZE = 168

INT32_MAX = 2**31 - 1
UINT16_MAX = 0xFFFF

POLAR_EARTH_RADIUS = 6356752.3142
MAX_LATITUDE = 89.999999
FEET_PER_METER = 3.2808399


class ChannelType(IntEnum):
    PRIMARY = 0
    SECONDARY = 1
    DOWNSCAN = 2
    SIDESCAN_LEFT = 3
    SIDESCAN_RIGHT = 4
    SIDESCAN_COMPOSITE = 5
    THREE_D = 9


CHANNEL_NAMES = {
    ChannelType.PRIMARY:            'Primary',
    ChannelType.SECONDARY:          'Secondary',
    ChannelType.DOWNSCAN:           'DownScan',
    ChannelType.SIDESCAN_LEFT:      'SidescanLeft',
    ChannelType.SIDESCAN_RIGHT:     'SidescanRight',
    ChannelType.SIDESCAN_COMPOSITE: 'SidescanComposite',
    ChannelType.THREE_D:            'ThreeD',
}

# Sonar transducer frequency codes
FREQUENCY_NAMES = {
    0:  '200 kHz',
    1:  '50 kHz',
    2:  '83 kHz',
    3:  '455 kHz',
    4:  '800 kHz',
    5:  '38 kHz',
    6:  '28 kHz',
    7:  '130-210 kHz',
    8:  '90-150 kHz',
    9:  '40-60 kHz',
    10: '25-45 kHz',
}

# Frame header field tables: name -> (offset, struct format)
SL2_FIELDS = {
    'frame_offset':                (0,   '<I'),
    'last_primary_offset':         (4,   '<I'),
    'last_secondary_offset':       (8,   '<I'),
    'last_downscan_offset':        (12,  '<I'),
    'last_sidescan_left_offset':   (16,  '<I'),
    'last_sidescan_right_offset':  (20,  '<I'),
    'last_composite_offset':       (24,  '<I'),
    'this_frame_size':             (28,  '<H'),
    'prev_frame_size':             (30,  '<H'),
    'channel':                     (32,  '<H'),
    'packet_size':                 (34,  '<H'),
    'frame_index':                 (36,  '<I'),
    'upper_limit':                 (40,  '<f'),
    'lower_limit':                 (44,  '<f'),
    'frequency':                   (50,  '<B'),
    'creation_time':               (60,  '<I'),
    'depth':                       (64,  '<f'),
    'keel_depth':                  (68,  '<f'),
    'speed_gps':                   (100, '<f'),
    'temperature':                 (104, '<f'),
    'longitude':                   (108, '<i'),
    'latitude':                    (112, '<i'),
    'water_speed':                 (116, '<f'),
    'course':                      (120, '<f'),
    'altitude':                    (124, '<f'),
    'heading':                     (128, '<f'),
    'flags':                       (132, '<H'),
    'time_offset':                 (140, '<I'),
}

SL3_FIELDS = {
    'frame_offset':                (0,   '<I'),
    'this_frame_size':             (8,   '<H'),
    'prev_frame_size':             (10,  '<H'),
    'channel':                     (12,  '<H'),
    'frame_index':                 (16,  '<I'),
    'upper_limit':                 (20,  '<f'),
    'lower_limit':                 (24,  '<f'),
    'creation_time':               (40,  '<I'),
    'packet_size':                 (44,  '<H'),
    'depth':                       (48,  '<f'),
    'frequency':                   (52,  '<B'),
    'speed_gps':                   (84,  '<f'),
    'temperature':                 (88,  '<f'),
    'longitude':                   (92,  '<i'),
    'latitude':                    (96,  '<i'),
    'water_speed':                 (100, '<f'),
    'course':                      (104, '<f'),
    'altitude':                    (108, '<f'),
    'heading':                     (112, '<f'),
    'flags':                       (116, '<H'),
    'time_offset':                 (124, '<I'),
    'last_primary_offset':         (128, '<I'),
    'last_secondary_offset':       (132, '<I'),
    'last_downscan_offset':        (136, '<I'),
    'last_sidescan_left_offset':   (140, '<I'),
    'last_sidescan_right_offset':  (144, '<I'),
    'last_composite_offset':       (148, '<I'),
    'last_three_d_offset':         (164, '<I'),
}

FRAME_LAYOUTS = {
    FORMAT_SL2: (SL2_FIELDS, SL2_FRAME_HEADER_SIZE),
    FORMAT_SL3: (SL3_FIELDS, SL3_FRAME_HEADER_SIZE),
}

LAST_OFFSET_FIELDS = {
    ChannelType.PRIMARY:            'last_primary_offset',
    ChannelType.SECONDARY:          'last_secondary_offset',
    ChannelType.DOWNSCAN:           'last_downscan_offset',
    ChannelType.SIDESCAN_LEFT:      'last_sidescan_left_offset',
    ChannelType.SIDESCAN_RIGHT:     'last_sidescan_right_offset',
    ChannelType.SIDESCAN_COMPOSITE: 'last_composite_offset',
    ChannelType.THREE_D:            'last_three_d_offset',
}


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class Header:
    file_version: int
    hardware_version: int = 0
    block_size: int = 3200

    @property
    def format_name(self):
        return FORMAT_NAMES.get(self.file_version, f'unknown({self.file_version})')


DEFAULT_SL2_HEADER = Header(FORMAT_SL2, hardware_version=0, block_size=3200)
DEFAULT_SL3_HEADER = Header(FORMAT_SL3, hardware_version=1, block_size=3200)


@dataclass
class Frame:
    """One sonar ping on one channel.

    Depths, limits and altitude are kept in meters; the container stores
    feet and the conversion happens in ``decode_frame`` / ``encode_frame``.
    """
    channel: ChannelType
    frame_index: int
    latitude: float
    longitude: float
    depth_m: float
    frequency: Optional[int] = None
    sounded_data: bytes = b''
    upper_limit_m: float = 0.0
    lower_limit_m: float = 0.0
    keel_depth_m: float = 0.0
    speed_gps_kn: float = 0.0
    water_speed_kn: float = 0.0
    temperature_c: float = 0.0
    course_rad: float = 0.0
    altitude_m: float = 0.0
    heading_rad: float = 0.0
    flags: int = 0
    time_offset_ms: int = 0
    timestamp_raw: int = 0

    @property
    def point(self):
        return (self.latitude, self.longitude)


@dataclass
class LogData:
    header: Header
    frames: List[Frame]
    creation_time: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

def feet_to_meters(value):
    return value / FEET_PER_METER


def meters_to_feet(value):
    return value * FEET_PER_METER


def mercator_to_longitude(easting):
    """Spherical mercator easting (polar radius) -> longitude in degrees."""
    return math.degrees(easting / POLAR_EARTH_RADIUS)


def mercator_to_latitude(northing):
    """Spherical mercator northing (polar radius) -> latitude in degrees."""
    return math.degrees(2.0 * math.atan(math.exp(northing / POLAR_EARTH_RADIUS)) - math.pi / 2.0)


def longitude_to_mercator(longitude):
    return int(round(math.radians(longitude) * POLAR_EARTH_RADIUS))


def latitude_to_mercator(latitude):
    # The projection diverges at the poles
    lat = max(-MAX_LATITUDE, min(MAX_LATITUDE, latitude))
    return int(round(POLAR_EARTH_RADIUS * math.log(math.tan(math.pi / 4.0 + math.radians(lat) / 2.0))))


def parse_channel(token):
    """Parse a channel number as typed on the command line ('0', '5', ...)."""
    try:
        return ChannelType(int(str(token).strip()))
    except ValueError:
        raise InvalidInputError(f'Unknown channel: {token!r}') from None


def channel_name(channel):
    try:
        return CHANNEL_NAMES[ChannelType(channel)]
    except ValueError:
        return f'Unknown{channel}'


def frame_layout(file_version):
    """Return ``(fields, frame_header_size)`` for an SL2/SL3 file version."""
    try:
        return FRAME_LAYOUTS[file_version]
    except KeyError:
        name = FORMAT_NAMES.get(file_version, str(file_version))
        raise LogReadError(f'Unsupported log format: {name}') from None


# ---------------------------------------------------------------------------
# Low-level parsing
# ---------------------------------------------------------------------------

def _field(fields, data, pos, name):
    off, fmt = fields[name]
    return struct.unpack_from(fmt, data, pos + off)[0]


def parse_header(data):
    """Decode the 8-byte file header."""
    if len(data) < HEADER_SIZE:
        raise LogReadError(f'File too short for a header: {len(data)} bytes')
    file_version, hardware_version, block_size, _reserved = HEADER_STRUCT.unpack_from(data, 0)
    if file_version not in FRAME_LAYOUTS:
        name = FORMAT_NAMES.get(file_version, f'0x{file_version:04x}')
        raise LogReadError(f'Not an SL2/SL3 log (format {name})')
    return Header(file_version, hardware_version, block_size)


def decode_frame(fields, data, pos, header_size):
    """Decode one frame starting at ``pos``.

    Returns None for frames on channels outside ``ChannelType``.
    """
    raw_channel = _field(fields, data, pos, 'channel')
    try:
        channel = ChannelType(raw_channel)
    except ValueError:
        return None
    packet_size = _field(fields, data, pos, 'packet_size')
    start = pos + header_size
    return Frame(
        channel=channel,
        frame_index=_field(fields, data, pos, 'frame_index'),
        latitude=mercator_to_latitude(_field(fields, data, pos, 'latitude')),
        longitude=mercator_to_longitude(_field(fields, data, pos, 'longitude')),
        depth_m=feet_to_meters(_field(fields, data, pos, 'depth')),
        frequency=_field(fields, data, pos, 'frequency'),
        sounded_data=bytes(data[start:start + packet_size]),
        upper_limit_m=feet_to_meters(_field(fields, data, pos, 'upper_limit')),
        lower_limit_m=feet_to_meters(_field(fields, data, pos, 'lower_limit')),
        keel_depth_m=feet_to_meters(_field(fields, data, pos, 'keel_depth')) if 'keel_depth' in fields else 0.0,
        speed_gps_kn=_field(fields, data, pos, 'speed_gps'),
        water_speed_kn=_field(fields, data, pos, 'water_speed'),
        temperature_c=_field(fields, data, pos, 'temperature'),
        course_rad=_field(fields, data, pos, 'course'),
        altitude_m=feet_to_meters(_field(fields, data, pos, 'altitude')),
        heading_rad=_field(fields, data, pos, 'heading'),
        flags=_field(fields, data, pos, 'flags'),
        time_offset_ms=_field(fields, data, pos, 'time_offset'),
        timestamp_raw=_field(fields, data, pos, 'creation_time'),
    )


def parse_frames(data, file_version, start=HEADER_SIZE):
    """Walk the frames of a log body.

    A frame that runs past the end of ``data`` ends the walk; the complete
    frames read so far are kept.
    """
    fields, header_size = frame_layout(file_version)
    frames = []
    skipped = {}
    pos = start
    while pos + header_size <= len(data):
        this_size = _field(fields, data, pos, 'this_frame_size')
        packet_size = _field(fields, data, pos, 'packet_size')
        frame_end = pos + header_size + packet_size
        if frame_end > len(data):
            logger.warning('Truncated frame at offset %d (needs %d bytes, %d left); '
                           'keeping %d complete frames',
                           pos, frame_end - pos, len(data) - pos, len(frames))
            break
        frame = decode_frame(fields, data, pos, header_size)
        if frame is None:
            raw_channel = _field(fields, data, pos, 'channel')
            skipped[raw_channel] = skipped.get(raw_channel, 0) + 1
        else:
            frames.append(frame)
        # The last frame of a log may carry a zero frame size
        if this_size == 0:
            break
        pos += this_size
    for raw_channel, count in sorted(skipped.items()):
        logger.debug('Skipped %d frames on unknown channel %d', count, raw_channel)
    return frames


def parse_log(data):
    """Parse the bytes of an SL2/SL3 log into a ``LogData``."""
    header = parse_header(data)
    frames = parse_frames(data, header.file_version)
    creation_time = None
    if frames and 0 < frames[0].timestamp_raw < 0xFFFFFFFF:
        creation_time = datetime.fromtimestamp(frames[0].timestamp_raw, tz=timezone.utc)
    return LogData(header=header, frames=frames, creation_time=creation_time)


def read_log(filepath):
    """Read an SL2/SL3 file.

    Parameters
    ----------
    filepath : str or pathlib.Path
        Path to the .sl2 / .sl3 file.

    Returns
    -------
    LogData
        File header, frames in file order and the creation time taken from
        the first frame (None when the device had no time fix).

    Raises
    ------
    LogReadError
        The file cannot be opened or is not an SL2/SL3 log.
    """
    try:
        with open(filepath, 'rb') as f:
            data = f.read()
    except OSError as exc:
        raise LogReadError(f'Cannot read {filepath}: {exc}') from exc
    log = parse_log(data)
    logger.debug('Read %d frames from %s (%s)', len(log.frames), filepath, log.header.format_name)
    return log


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def encode_frame(frame, fields, header_size, values):
    """Encode one frame; ``values`` holds the layout fields (offsets, sizes)."""
    buf = bytearray(header_size)
    row = dict(values)
    row.update({
        'channel':       int(frame.channel),
        'packet_size':   len(frame.sounded_data),
        'frame_index':   frame.frame_index,
        'upper_limit':   meters_to_feet(frame.upper_limit_m),
        'lower_limit':   meters_to_feet(frame.lower_limit_m),
        'frequency':     frame.frequency or 0,
        'creation_time': frame.timestamp_raw,
        'depth':         meters_to_feet(frame.depth_m),
        'keel_depth':    meters_to_feet(frame.keel_depth_m),
        'speed_gps':     frame.speed_gps_kn,
        'temperature':   frame.temperature_c,
        'longitude':     longitude_to_mercator(frame.longitude),
        'latitude':      latitude_to_mercator(frame.latitude),
        'water_speed':   frame.water_speed_kn,
        'course':        frame.course_rad,
        'altitude':      meters_to_feet(frame.altitude_m),
        'heading':       frame.heading_rad,
        'flags':         frame.flags,
        'time_offset':   frame.time_offset_ms,
    })
    for name, (off, fmt) in fields.items():
        struct.pack_into(fmt, buf, off, row.get(name, 0))
    return bytes(buf) + frame.sounded_data


def encode_log(frames, header):
    """Encode frames into an SL2/SL3 byte string using ``header``'s version.

    Frame offsets, frame sizes and the per-channel last-frame offsets are
    recomputed from the frame order.
    """
    try:
        fields, header_size = frame_layout(header.file_version)
    except LogReadError as exc:
        raise LogWriteError(str(exc)) from None

    out = bytearray(HEADER_STRUCT.pack(header.file_version, header.hardware_version,
                                       header.block_size, 0))
    last_offsets = {}
    prev_size = 0
    for frame in frames:
        pos = len(out)
        size = header_size + len(frame.sounded_data)
        if size > UINT16_MAX:
            raise LogWriteError(f'Frame {frame.frame_index} on {channel_name(frame.channel)} '
                                f'is too large: {size} bytes')
        last_offsets[frame.channel] = pos
        values = {
            'frame_offset':    pos,
            'this_frame_size': size,
            'prev_frame_size': prev_size,
        }
        for channel, name in LAST_OFFSET_FIELDS.items():
            values[name] = last_offsets.get(channel, 0)
        try:
            out += encode_frame(frame, fields, header_size, values)
        except struct.error as exc:
            raise LogWriteError(f'Cannot encode frame {frame.frame_index}: {exc}') from exc
        prev_size = size
    return bytes(out)


def write_log(filepath, frames, header):
    """Encode ``frames`` and write them to ``filepath``."""
    data = encode_log(frames, header)
    try:
        with open(filepath, 'wb') as f:
            f.write(data)
    except OSError as exc:
        raise LogWriteError(f'Cannot write {filepath}: {exc}') from exc
    logger.debug('Wrote %d frames (%d bytes) to %s', len(frames), len(data), filepath)
    return len(data)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def channel_summary(frames):
    """Per-channel frame statistics in order of first appearance."""
    summary = {}
    for frame in frames:
        s = summary.get(frame.channel)
        if s is None:
            summary[frame.channel] = {
                'frequency': frame.frequency,
                'first_index': frame.frame_index,
                'last_index': frame.frame_index,
                'count': 1,
            }
        else:
            s['last_index'] = frame.frame_index
            s['count'] += 1
    return summary


def print_summary(log):
    """Print the file header and a per-channel table of a parsed log."""
    h = log.header
    print(f'File Version: {h.format_name}, Hardware Version: {h.hardware_version}, '
          f'Block Size: {h.block_size}')
    if log.creation_time is not None:
        print(f'File creation time: {log.creation_time:%d.%m.%Y %H:%M:%S %z}')
    print()
    print(f"|{'Channel Type':>22}|{'Frequency':>14}|{'First Frame':>12}|"
          f"{'Last Frame':>12}|{'Frames Total':>12}|")
    print('-' * 78)
    for channel, s in channel_summary(log.frames).items():
        label = f'{channel_name(channel)}({int(channel)})'
        freq = FREQUENCY_NAMES.get(s['frequency'], '-' if s['frequency'] is None else str(s['frequency']))
        print(f"|{label:>22}|{freq:>14}|{s['first_index']:>12}|"
              f"{s['last_index']:>12}|{s['count']:>12}|")
    print('-' * 78)
    print(f"|{'':>22}|{'':>14}|{'':>12}|{'':>12}|{len(log.frames):>12}|")


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == '__main__':
    import sys
    import os

    if len(sys.argv) < 2:
        print(f"Usage: python {os.path.basename(__file__)} <file.sl2|file.sl3> [--plot]")
        print(f"       Parse a Lowrance sonar log and print a channel summary.")
        print(f"       Add --plot to save a track plot colored by depth.")
        sys.exit(1)

    filepath = sys.argv[1]
    logging.basicConfig(level=logging.INFO, format='%(levelname)-8s [%(name)s] %(message)s')

    print(f"Parsing: {filepath}")
    print(f"Size: {os.path.getsize(filepath) / 1e6:.1f} MB")
    print()

    try:
        parsed = read_log(filepath)
    except LogReadError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    print_summary(parsed)

    if '--plot' in sys.argv:
        from slx_export import plot_track

        outpath = filepath.rsplit('.', 1)[0] + '_track.png'
        plot_track(parsed.frames, outpath)
        print(f"\nPlot saved: {outpath}")
