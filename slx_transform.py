"""
Frame Transforms
================
In-memory transforms over lists of ``slx_log.Frame``:

  depth shift      — add a signed constant to every depth
  depth adjust     — re-reference one log's depths onto another's using the
                     geographically nearest pair of points
  channel generate — build frames for a damaged channel from other channels
  flip             — mirror sounded data (transducer mounted back to front)
  filter           — frame index range and channel selection
  anonymize        — move the track to a random place, keeping its shape

Transforms that replace fields work in place; transforms that create frames
return new ``Frame`` instances and leave appending to the caller, except
``generate_channel_frames`` which edits the list it is given.
"""

import logging
import math
import re
from collections import namedtuple
from dataclasses import replace

import numpy as np

from slx_log import INT32_MAX, ChannelType, InvalidInputError, channel_name, parse_channel

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Depth shift
# ---------------------------------------------------------------------------

# 'm' prefix subtracts, 'p' prefix (or none) adds: m1.15 -> -1.15
_DEPTH_SHIFT_PATTERN = re.compile(r'^\s*([mp]?)(\d+(?:\.\d*)?|\.\d+)\s*$', re.IGNORECASE)


def parse_depth_shift(text):
    """Parse a depth shift value such as ``'m1.15'`` or ``'p0.5'`` (meters)."""
    m = _DEPTH_SHIFT_PATTERN.match(text or '')
    if m is None:
        raise InvalidInputError(f'Malformed depth shift {text!r}; expected m<meters> or p<meters>')
    value = float(m.group(2))
    return -value if m.group(1).lower() == 'm' else value


def shift_depth(frames, value):
    """Add ``value`` meters to the depth of every frame, in place."""
    for frame in frames:
        frame.depth_m += value
    return len(frames)


# ---------------------------------------------------------------------------
# Depth adjust
# ---------------------------------------------------------------------------

EARTH_RADIUS_M = 6371008.8
DISTANCE_TOLERANCE_M = 1e-6
_NEAREST_CHUNK = 256

NearestPoints = namedtuple('NearestPoints', ['base', 'adjust', 'distance_m'])


def _haversine(lat1, lon1, lat2, lon2):
    """Great-circle distance in meters; all arguments in radians, broadcastable."""
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2.0) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def find_nearest_points(base, to_adjust):
    """Find the globally closest pair between two frame sequences.

    Exhaustive search over every (base, adjust) pair, evaluated in chunks of
    adjust rows against the whole base track.

    Parameters
    ----------
    base : list of Frame
        Frames whose depth is the reference.
    to_adjust : list of Frame
        Frames whose depth will be corrected.

    Returns
    -------
    NearestPoints
        ``(base_frame, adjust_frame, distance_m)``. Distances equal within
        ``DISTANCE_TOLERANCE_M`` resolve to the earliest base frame, then
        the earliest adjust frame.

    Raises
    ------
    InvalidInputError
        Either sequence is empty, or no pair has finite coordinates.
    """
    if not base or not to_adjust:
        raise InvalidInputError('Nearest point search needs two non-empty frame sequences '
                                f'(base: {len(base)}, adjust: {len(to_adjust)})')

    base_lat = np.radians(np.array([f.latitude for f in base], dtype=np.float64))
    base_lon = np.radians(np.array([f.longitude for f in base], dtype=np.float64))
    adj_lat = np.radians(np.array([f.latitude for f in to_adjust], dtype=np.float64))
    adj_lon = np.radians(np.array([f.longitude for f in to_adjust], dtype=np.float64))

    def _chunks():
        for start in range(0, len(to_adjust), _NEAREST_CHUNK):
            stop = min(start + _NEAREST_CHUNK, len(to_adjust))
            yield start, _haversine(adj_lat[start:stop, None], adj_lon[start:stop, None],
                                    base_lat[None, :], base_lon[None, :])

    # first pass: global minimum distance
    min_d = min(float(d[np.isfinite(d)].min(initial=np.inf)) for _, d in _chunks())
    if not np.isfinite(min_d):
        raise InvalidInputError('No pair of frames with finite coordinates')

    # second pass: lowest base index, then lowest adjust index, within tolerance
    best_i, best_j = len(base), len(to_adjust)
    for start, d in _chunks():
        rows, cols = np.nonzero(d <= min_d + DISTANCE_TOLERANCE_M)
        if not len(cols):
            continue
        k = int(np.lexsort((rows, cols))[0])
        i, j = int(cols[k]), start + int(rows[k])
        if (i, j) < (best_i, best_j):
            best_i, best_j = i, j

    best_d = float(_haversine(adj_lat[best_j], adj_lon[best_j], base_lat[best_i], base_lon[best_i]))
    return NearestPoints(base[best_i], to_adjust[best_j], best_d)


def adjust_depth(base, to_adjust, on_nearest=None):
    """Re-reference ``to_adjust`` depths onto ``base``.

    The depth difference of the single nearest pair is added to every frame
    of ``to_adjust``. Returns corrected copies in the order of ``to_adjust``;
    the inputs are not modified. ``on_nearest`` is called with the
    ``NearestPoints`` before the correction is applied.
    """
    nearest = find_nearest_points(base, to_adjust)
    if on_nearest is not None:
        on_nearest(nearest)
    difference = nearest.base.depth_m - nearest.adjust.depth_m
    logger.info('Nearest points %.3f m apart: base (%.6f, %.6f) depth %.2f m, '
                'adjust (%.6f, %.6f) depth %.2f m; difference %+.3f m',
                nearest.distance_m,
                nearest.base.latitude, nearest.base.longitude, nearest.base.depth_m,
                nearest.adjust.latitude, nearest.adjust.longitude, nearest.adjust.depth_m,
                difference)
    return [replace(frame, depth_m=frame.depth_m + difference) for frame in to_adjust]


# ---------------------------------------------------------------------------
# Channel frame generation
# ---------------------------------------------------------------------------

DEFAULT_SAMPLES = 1024
WATER_LEVEL = 8
BOTTOM_LEVEL = 96
BOTTOM_RAMP = 32

GenerateParams = namedtuple('GenerateParams', ['destination', 'sources', 'force', 'from_depth'])
GenerationResult = namedtuple('GenerationResult', ['unique_sources', 'erased', 'added'])


def parse_generate_params(tokens):
    """Parse generation tokens like ``['1', '2', '5', 'f']``.

    The first channel number is the destination, the following numbers are
    sources; ``f`` forces erasing the destination channel first and ``d``
    synthesizes sounded data from depth.
    """
    destination = None
    sources = []
    force = from_depth = False
    for token in tokens:
        token = str(token).strip()
        if not token:
            continue
        if token.lower() == 'f':
            force = True
        elif token.lower() == 'd':
            from_depth = True
        elif destination is None:
            destination = parse_channel(token)
        else:
            channel = parse_channel(token)
            if channel == destination:
                raise InvalidInputError(f'Source channel {token} is the destination channel')
            if channel not in sources:
                sources.append(channel)
    if destination is None:
        raise InvalidInputError(f'No destination channel in generation parameters {tokens!r}')
    return GenerateParams(destination, sources, force, from_depth)


def synthesize_sounded_data(depth_m, upper_limit_m, lower_limit_m, n_samples):
    """Build a synthetic trace with a bottom return at ``depth_m``.

    Samples span ``[upper_limit_m, lower_limit_m]`` linearly. The water
    column is ``WATER_LEVEL``; the bottom echo starts at 255 and decays to
    ``BOTTOM_LEVEL`` over ``BOTTOM_RAMP`` samples. A depth that is not
    finite gives a water-only trace.
    """
    if n_samples <= 0:
        return b''
    if not math.isfinite(depth_m):
        logger.debug('Depth %r is not finite; synthesizing water column only', depth_m)
        return bytes([WATER_LEVEL]) * n_samples
    finite_range = math.isfinite(upper_limit_m) and math.isfinite(lower_limit_m)
    if not finite_range or lower_limit_m <= upper_limit_m:
        upper_limit_m, lower_limit_m = 0.0, max(2.0 * depth_m, 1.0)

    samples = np.full(n_samples, WATER_LEVEL, dtype=np.uint8)
    bottom = int(math.floor((depth_m - upper_limit_m) / (lower_limit_m - upper_limit_m) * n_samples))
    if bottom < 0:
        samples[:] = BOTTOM_LEVEL
    elif bottom < n_samples:
        ramp = np.linspace(255, BOTTOM_LEVEL, BOTTOM_RAMP).astype(np.uint8)
        end = min(n_samples, bottom + BOTTOM_RAMP)
        samples[bottom:end] = ramp[:end - bottom]
        samples[end:] = BOTTOM_LEVEL
    return samples.tobytes()


def frame_from_other_channel(channel, source, from_depth=False):
    """Copy ``source`` onto ``channel``, optionally with synthetic sounded data."""
    if from_depth:
        n_samples = len(source.sounded_data) or DEFAULT_SAMPLES
        data = synthesize_sounded_data(source.depth_m, source.upper_limit_m,
                                       source.lower_limit_m, n_samples)
    else:
        data = source.sounded_data
    return replace(source, channel=ChannelType(channel), sounded_data=data)


def generate_channel_frames(frames, destination, sources, force=False, from_depth=False):
    """Fill ``destination`` with frames taken from the ``sources`` channels.

    Steps:
      1. source frames, first frame per frame index in list order
      2. with ``force``, remove every destination frame
      3. coordinates already present on the destination channel
      4. append a destination copy of each source frame at a new coordinate

    ``frames`` is modified in place. Returns a ``GenerationResult``.
    """
    destination = ChannelType(destination)
    sources = [ChannelType(s) for s in sources]
    if destination in sources:
        raise InvalidInputError(f'Destination channel {channel_name(destination)} '
                                f'is also a source channel')
    if not sources:
        logger.info('No source channels for frame generation; skipping')
        return GenerationResult(0, 0, 0)

    source_set = set(sources)
    unique = {}
    for frame in frames:
        if frame.channel in source_set and frame.frame_index not in unique:
            unique[frame.frame_index] = frame

    erased = 0
    if force:
        kept = [frame for frame in frames if frame.channel != destination]
        erased = len(frames) - len(kept)
        frames[:] = kept

    existing = {frame.point for frame in frames if frame.channel == destination}

    added = 0
    for source in unique.values():
        if source.point not in existing:
            frames.append(frame_from_other_channel(destination, source, from_depth))
            added += 1

    logger.info('Channel generation %s <- %s: %d unique source frames, %d erased, %d added',
                channel_name(destination), ', '.join(channel_name(s) for s in sources),
                len(unique), erased, added)
    return GenerationResult(len(unique), erased, added)


# ---------------------------------------------------------------------------
# Sounded data flip
# ---------------------------------------------------------------------------

def flip_sounded_data(data):
    """Reverse the sample order of a sounded-data payload."""
    return bytes(data[::-1])


def flip_channel(frames, channel=ChannelType.SIDESCAN_COMPOSITE):
    """Flip sounded data of every frame on ``channel`` in place."""
    flipped = 0
    for frame in frames:
        if frame.channel == channel:
            frame.sounded_data = flip_sounded_data(frame.sounded_data)
            flipped += 1
    return flipped


# ---------------------------------------------------------------------------
# Filter and anonymize
# ---------------------------------------------------------------------------

def frame_matches(frame, index_from=0, index_to=INT32_MAX, channels=None):
    """True when the frame index is in range and the channel is selected."""
    if not index_from <= frame.frame_index <= index_to:
        return False
    return not channels or frame.channel in channels


def filter_frames(frames, index_from=0, index_to=INT32_MAX, channels=None):
    """Frames with ``index_from <= frame_index <= index_to`` on ``channels``.

    An empty or missing channel collection accepts every channel.
    """
    channels = set(channels) if channels else None
    return [f for f in frames if frame_matches(f, index_from, index_to, channels)]


def anonymize_frames(frames, rng=None):
    """Move the track to a random place on Earth, in place.

    One whole-degree latitude in [-90, 90) and longitude in [-180, 180) is
    drawn per call; every point keeps its fractional degrees and takes the
    drawn whole degrees, so the shape of the track is unchanged. Latitudes
    are clipped to [-90, 90].

    Returns the ``(latitude, longitude)`` offsets used.
    """
    if rng is None:
        rng = np.random.default_rng()
    lat_offset = int(rng.integers(-90, 90))
    lon_offset = int(rng.integers(-180, 180))
    for frame in frames:
        lat = math.fmod(frame.latitude, 1.0) + lat_offset
        frame.latitude = min(90.0, max(-90.0, lat))
        frame.longitude = math.fmod(frame.longitude, 1.0) + lon_offset
    logger.debug('Anonymized %d frames with offset (%d, %d)', len(frames), lat_offset, lon_offset)
    return lat_offset, lon_offset
