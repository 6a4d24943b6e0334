"""
Raw Field Research
==================
Helps reverse-engineer undocumented frame header fields: the bytes at a
fixed offset from the start of every frame are read and shown as several
candidate types side by side.

    raw_bytes   the bytes themselves
    as_string   printable ASCII, '.' for anything else
    short_a     int16 LE from bytes 0-1
    short_b     int16 LE from bytes 2-3
    as_int32    int32 LE from bytes 0-3
    as_float32  float32 LE from bytes 0-3

Frames are walked by their own this-frame-size field, so records on
channels the parser does not know are sampled too.
"""

import logging
import struct
from collections import namedtuple

from slx_log import HEADER_SIZE, ChannelType, InvalidInputError, channel_name, frame_layout, parse_header

logger = logging.getLogger(__name__)

RESEARCH_WIDTH = 4

ResearchValue = namedtuple('ResearchValue', [
    'raw_bytes', 'as_string', 'short_a', 'short_b',
    'as_int32', 'as_float32', 'frame_index', 'channel',
])


def interpret_bytes(raw, frame_index, channel):
    """Build a ``ResearchValue`` from at least four raw bytes."""
    short_a, short_b = struct.unpack_from('<hh', raw, 0)
    as_int32 = struct.unpack_from('<i', raw, 0)[0]
    as_float32 = struct.unpack_from('<f', raw, 0)[0]
    as_string = ''.join(chr(b) if 0x20 <= b < 0x7F else '.' for b in raw)
    try:
        channel = ChannelType(channel)
    except ValueError:
        pass
    return ResearchValue(bytes(raw), as_string, short_a, short_b,
                         as_int32, as_float32, frame_index, channel)


def research_values(stream, start, offset, file_version, width=RESEARCH_WIDTH):
    """Yield ``(file_offset, ResearchValue)`` for every frame of a log.

    Parameters
    ----------
    stream : binary file object
        Seekable, opened for reading.
    start : int
        File offset of the first frame (``HEADER_SIZE`` for a whole file).
    offset : int
        Byte offset inside each frame to sample.
    file_version : int
        ``FORMAT_SL2`` or ``FORMAT_SL3``; selects the frame header layout.
    width : int
        Number of bytes sampled, at least 4.

    Yields
    ------
    (int, ResearchValue)
        Absolute file offset of the sampled bytes and their interpretations,
        in file order.

    A frame header or sample that runs past the end of the stream ends the
    iteration with a warning; everything before it has been yielded.
    """
    if offset < 0:
        raise InvalidInputError(f'Research offset must be >= 0, got {offset}')
    if width < RESEARCH_WIDTH:
        raise InvalidInputError(f'Research width must be >= {RESEARCH_WIDTH}, got {width}')
    fields, header_size = frame_layout(file_version)
    size_off, size_fmt = fields['this_frame_size']
    chan_off, chan_fmt = fields['channel']
    index_off, index_fmt = fields['frame_index']

    pos = start
    count = 0
    while True:
        stream.seek(pos)
        head = stream.read(header_size)
        if not head:
            break
        if len(head) < header_size:
            logger.warning('Truncated frame header at offset %d after %d frames', pos, count)
            break
        this_size = struct.unpack_from(size_fmt, head, size_off)[0]
        channel = struct.unpack_from(chan_fmt, head, chan_off)[0]
        frame_index = struct.unpack_from(index_fmt, head, index_off)[0]

        stream.seek(pos + offset)
        raw = stream.read(width)
        if len(raw) < width:
            logger.warning('Source ends before offset %d of frame at %d; %d frames researched',
                           offset, pos, count)
            break
        yield pos + offset, interpret_bytes(raw, frame_index, channel)
        count += 1

        if this_size == 0:
            break
        pos += this_size


def research_file(filepath, offset, width=RESEARCH_WIDTH):
    """Research a whole file; returns ``{file_offset: ResearchValue}`` in file order."""
    with open(filepath, 'rb') as f:
        header = parse_header(f.read(HEADER_SIZE))
        return dict(research_values(f, HEADER_SIZE, offset, header.file_version, width))


def print_research(values, channels=None, index_from=0, index_to=None):
    """Print research values as a table, filtered by channel and frame index."""
    print(f"|{'String':>8}|{'Hex':>14}|{'Bytes':>18}|{'Short #1':>8}|{'Short #2':>8}|"
          f"{'Integer':>12}|{'Float':>14}|{'Frame Index':>11}|{'Channel':>18}|")
    print('-' * 122)
    for v in values.values():
        if channels and v.channel not in channels:
            continue
        if v.frame_index < index_from or (index_to is not None and v.frame_index > index_to):
            continue
        hex_str = '-'.join(f'{b:02X}' for b in v.raw_bytes)
        dec_str = ','.join(str(b) for b in v.raw_bytes)
        print(f"|{v.as_string:>8}|{hex_str:>14}|{dec_str:>18}|{v.short_a:>8}|{v.short_b:>8}|"
              f"{v.as_int32:>12}|{v.as_float32:>14.6g}|{v.frame_index:>11}|"
              f"{channel_name(v.channel):>18}|")
