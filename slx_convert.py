#!/usr/bin/env python3
"""
Sonar Log Converter
===================
Command-line front end: reads an SL2/SL3 log, runs the frame transforms in a
fixed order and writes the requested outputs.

PIPELINE ORDER
--------------
  1. depth adjust     (-d)  merge a second log re-referenced to this one
  2. depth shift      (-H)  m1.15 subtracts, p1.15 adds (meters)
  3. channel generate (-g)  dst:src[:src...][:f][:d]
  4. flip             (-l)  SidescanComposite sounded data
  5. research         (-s)  raw bytes at an offset, read from the input file
  6. filter           (-f, -t, -c)
  7. anonymize        (-a)
  8. outputs          (-o)  sl2:sl3:csv, written independently

Examples
--------
  slx-convert -i input.sl2 -H m1.15 -o csv
  slx-convert -i base.sl2 -d other.sl2 -o csv
  slx-convert -i input.sl2 -g 1:2:5:f -o sl2
  slx-convert -i input.sl2 -l -o sl2
  slx-convert -i input.sl3 -s 30 -t 10 -c 0:2
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np

from slx_log import (DEFAULT_SL2_HEADER, DEFAULT_SL3_HEADER, FORMAT_SL2, FORMAT_SL3, INT32_MAX,
                     ChannelType, InvalidInputError, LogReadError, LogWriteError, SonarLogError,
                     parse_channel, print_summary, read_log, write_log)
from slx_transform import (adjust_depth, anonymize_frames, filter_frames, flip_channel,
                           generate_channel_frames, parse_depth_shift, parse_generate_params,
                           shift_depth)

logger = logging.getLogger('slx_convert')

# argparse exits with 2 on invalid arguments
EXIT_OK = 0
EXIT_READ_ERROR = 1

OUTPUT_FORMATS = ('sl2', 'sl3', 'csv')
OUTPUT_HEADERS = {
    'sl2': (FORMAT_SL2, DEFAULT_SL2_HEADER),
    'sl3': (FORMAT_SL3, DEFAULT_SL3_HEADER),
}


@dataclass
class PipelineOptions:
    depth_shift: Optional[str] = None
    generate: List[str] = field(default_factory=list)
    flip: bool = False
    channels: List[ChannelType] = field(default_factory=list)
    index_from: int = 0
    index_to: int = INT32_MAX
    anonymize: bool = False
    formats: List[str] = field(default_factory=list)
    search_offset: Optional[int] = None


@dataclass
class PipelineResult:
    frames: list
    nearest: object = None
    adjusted: int = 0
    shifted: int = 0
    generation: object = None
    flipped: int = 0
    anonymize_offset: Optional[tuple] = None


def configure_logging(verbose=False, quiet=False):
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format='%(levelname)-8s [%(name)s] %(message)s',
                        stream=sys.stderr, force=True)


class _Timer:
    """Log the wall time of a pipeline stage."""

    def __init__(self, label):
        self.label = label

    def __enter__(self):
        self.t0 = time.perf_counter()
        return self

    def __exit__(self, *exc):
        logger.debug('%s time: %.3f s', self.label, time.perf_counter() - self.t0)
        return False


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def run_pipeline(frames, options, adjust_frames=None, rng=None):
    """Run the transform stages over ``frames`` (modified in place).

    Parameters
    ----------
    frames : list of Frame
        Frames of the input log; adjusted and generated frames are appended.
    options : PipelineOptions
    adjust_frames : list of Frame or None
        Frames of the depth-adjust log.
    rng : numpy.random.Generator or None
        Random source for anonymization.

    Returns
    -------
    PipelineResult
        ``frames`` holds the filtered (and anonymized) output frames.

    A stage that fails on malformed input is logged and skipped; the other
    stages still run.
    """
    result = PipelineResult(frames=frames)

    def _keep_nearest(nearest):
        result.nearest = nearest

    if adjust_frames is not None:
        with _Timer('Depth adjust'):
            try:
                adjusted = adjust_depth(frames, adjust_frames, on_nearest=_keep_nearest)
            except InvalidInputError as exc:
                logger.error('Depth adjust skipped: %s', exc)
            else:
                frames.extend(adjusted)
                result.adjusted = len(adjusted)

    if options.depth_shift:
        try:
            value = parse_depth_shift(options.depth_shift)
        except InvalidInputError as exc:
            logger.error('Depth shift skipped: %s', exc)
        else:
            result.shifted = shift_depth(frames, value)
            logger.info('Depth shift of %+.3f m applied to %d frames', value, result.shifted)

    if options.generate:
        try:
            params = parse_generate_params(options.generate)
        except InvalidInputError as exc:
            logger.error('Channel generation skipped: %s', exc)
        else:
            with _Timer('Channel generation'):
                result.generation = generate_channel_frames(
                    frames, params.destination, params.sources,
                    force=params.force, from_depth=params.from_depth)

    if options.flip:
        result.flipped = flip_channel(frames, ChannelType.SIDESCAN_COMPOSITE)
        logger.info('Flipped sounded data of %d SidescanComposite frames', result.flipped)

    with _Timer('Filter'):
        out = filter_frames(frames, options.index_from, options.index_to, options.channels)
    logger.info('%d of %d frames selected for output', len(out), len(frames))

    if options.anonymize:
        result.anonymize_offset = anonymize_frames(out, rng)

    result.frames = out
    return result


def output_header(fmt, input_header):
    """Reuse the input header when it has the target version, else the default."""
    version, default = OUTPUT_HEADERS[fmt]
    return input_header if input_header.file_version == version else default


def write_outputs(frames, input_header, formats, out_dir='.'):
    """Write each requested format; a failure only affects its own format.

    Returns ``{format: path or None}``.
    """
    from slx_export import unique_depth_points, write_csv

    out_dir = Path(out_dir)
    written = {}
    for fmt in formats:
        fmt = fmt.strip().lower()
        if fmt not in OUTPUT_FORMATS:
            logger.warning('Unknown output format %r ignored', fmt)
            continue
        path = out_dir / f'out.{fmt}'
        try:
            with _Timer(f'Writing {path.name}'):
                if fmt == 'csv':
                    count = write_csv(path, unique_depth_points(frames))
                    logger.info('Wrote %d points to %s', count, path)
                else:
                    write_log(path, frames, output_header(fmt, input_header))
                    logger.info('Wrote %d frames to %s', len(frames), path)
        except LogWriteError as exc:
            logger.error('Writing %s failed: %s', path, exc)
            written[fmt] = None
        else:
            written[fmt] = path
    return written


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def _colon_list(text):
    return [t for t in text.split(':') if t.strip()]


def _channel_list(text):
    try:
        return [parse_channel(t) for t in _colon_list(text)]
    except InvalidInputError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        prog='slx-convert',
        description='Convert, merge and repair Lowrance SL2/SL3 sonar logs',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(__doc__ or '').split('Examples\n--------\n', 1)[-1],
    )
    p.add_argument('-i', '--input', required=True, help='Input .sl2/.sl3 file')
    p.add_argument('-s', '--search', dest='search_offset', type=int,
                   help='Research mode: print the 4 bytes at this offset inside every frame')
    p.add_argument('-d', '--depth-adjust', dest='depth_adjust',
                   help='Log whose depths are re-referenced to the input and merged into it')
    p.add_argument('-o', '--output', type=_colon_list, default=[],
                   help='Output formats separated by colons: sl2:sl3:csv')
    p.add_argument('-c', '--channel', dest='channels', type=_channel_list, default=[],
                   help='Channels kept in the output, separated by colons (default all). '
                        'Primary=0, Secondary=1, DownScan=2, SidescanLeft=3, '
                        'SidescanRight=4, SidescanComposite=5, ThreeD=9')
    p.add_argument('-f', '--from', dest='index_from', type=int, default=0,
                   help='First frame index kept (default 0)')
    p.add_argument('-t', '--to', dest='index_to', type=int, default=INT32_MAX,
                   help='Last frame index kept (default all)')
    p.add_argument('-a', '--anonymous', action='store_true',
                   help='Move the track to a random place, keeping its shape')
    p.add_argument('-l', '--flip', action='store_true',
                   help='Flip sounded data of the SidescanComposite channel')
    p.add_argument('-H', '--depth-shift', dest='depth_shift',
                   help='Add (p1.15) or subtract (m1.15) meters to every depth')
    p.add_argument('-g', '--generate', type=_colon_list, default=[],
                   help='Generate frames for a channel from other channels: '
                        'dst:src[:src...][:f][:d]. f erases the destination channel first, '
                        'd synthesizes sounded data from depth')
    p.add_argument('--out-dir', default='.', help='Directory for out.* files (default .)')
    p.add_argument('--seed', type=int, help='Random seed for --anonymous')
    p.add_argument('--plot', action='store_true', help='Save a track plot (out_track.png)')
    p.add_argument('-v', '--verbose', action='store_true', help='Debug output with stage timings')
    p.add_argument('-q', '--quiet', action='store_true', help='Only warnings and errors')
    return p.parse_args(argv)


def options_from_args(args):
    return PipelineOptions(
        depth_shift=args.depth_shift,
        generate=args.generate,
        flip=args.flip,
        channels=args.channels,
        index_from=args.index_from,
        index_to=args.index_to,
        anonymize=args.anonymous,
        formats=args.output,
        search_offset=args.search_offset,
    )


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    options = options_from_args(args)

    try:
        with _Timer(f'Reading {args.input}'):
            log = read_log(args.input)
    except LogReadError as exc:
        logger.error("Can't read frames from file: %s", exc)
        return EXIT_READ_ERROR
    if not args.quiet:
        print_summary(log)

    adjust_frames = None
    if args.depth_adjust:
        try:
            adjust_frames = read_log(args.depth_adjust).frames
        except LogReadError as exc:
            logger.error("Can't read depth adjust file: %s", exc)

    result = run_pipeline(log.frames, options, adjust_frames=adjust_frames,
                          rng=np.random.default_rng(args.seed))

    if options.search_offset is not None:
        from slx_research import print_research, research_file

        try:
            with _Timer('Research'):
                values = research_file(args.input, options.search_offset)
        except (OSError, SonarLogError) as exc:
            logger.error('Research failed: %s', exc)
        else:
            print_research(values, options.channels, options.index_from, options.index_to)

    if options.formats:
        write_outputs(result.frames, log.header, options.formats, args.out_dir)

    if args.plot:
        from slx_export import plot_track

        outpath = Path(args.out_dir) / 'out_track.png'
        plot_track(result.frames, outpath)
        logger.info('Plot saved: %s', outpath)

    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
