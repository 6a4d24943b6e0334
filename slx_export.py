"""
Frame Export
============
Non-log outputs for a frame sequence:

  .csv  — one row per unique coordinate with the mean depth of all frames
          sounded there (Latitude, Longitude, Depth in meters)
  .png  — track plot colored by depth
"""

import csv
import logging

import numpy as np

from slx_log import LogWriteError

logger = logging.getLogger(__name__)

CSV_COLUMNS = ('Latitude', 'Longitude', 'Depth')


def unique_depth_points(frames):
    """Group frames by exact coordinate and average their depths.

    Returns
    -------
    list of (latitude, longitude, depth_m)
        One entry per coordinate, in order of first appearance.
    """
    sums = {}
    for frame in frames:
        acc = sums.get(frame.point)
        if acc is None:
            sums[frame.point] = [frame.depth_m, 1]
        else:
            acc[0] += frame.depth_m
            acc[1] += 1
    return [(lat, lon, total / n) for (lat, lon), (total, n) in sums.items()]


def write_csv(filepath, points):
    """Write ``(latitude, longitude, depth_m)`` rows to a CSV file."""
    try:
        with open(filepath, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow(CSV_COLUMNS)
            for lat, lon, depth in points:
                writer.writerow([f'{lat:.7f}', f'{lon:.7f}', f'{depth:.2f}'])
    except OSError as exc:
        raise LogWriteError(f'Cannot write {filepath}: {exc}') from exc
    logger.debug('Wrote %d points to %s', len(points), filepath)
    return len(points)


def plot_track(frames, outpath):
    """Save a scatter of the track colored by depth.

    Parameters
    ----------
    frames : list of Frame
    outpath : str or Path — PNG file to write
    """
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    TITLE_FS = 11
    LABEL_FS = 9
    TICK_FS = 8

    lat = np.array([f.latitude for f in frames], dtype=np.float64)
    lon = np.array([f.longitude for f in frames], dtype=np.float64)
    depth = np.array([f.depth_m for f in frames], dtype=np.float64)

    fig, ax = plt.subplots(figsize=(9, 8), constrained_layout=True)
    if len(frames):
        valid = depth[np.isfinite(depth)]
        vmax = float(np.nanpercentile(valid, 98)) if len(valid) else 10.0
        sc = ax.scatter(lon, lat, c=depth, cmap='plasma_r', s=0.8, alpha=0.7,
                        vmin=0, vmax=max(vmax, 0.1))
        cb = fig.colorbar(sc, ax=ax, shrink=0.85, pad=0.02)
        cb.set_label('Depth (m)', fontsize=LABEL_FS)
        cb.ax.tick_params(labelsize=TICK_FS)
        ax.set_aspect('equal')
        ax.ticklabel_format(useOffset=False)
        plt.setp(ax.xaxis.get_majorticklabels(), rotation=20, ha='right')
    else:
        ax.text(0.5, 0.5, 'No frames to plot', ha='center', va='center',
                transform=ax.transAxes, fontsize=LABEL_FS)
    ax.set_xlabel('Longitude', fontsize=LABEL_FS)
    ax.set_ylabel('Latitude', fontsize=LABEL_FS)
    ax.set_title(f'Sonar Track ({len(frames)} frames)', fontsize=TITLE_FS)
    ax.tick_params(labelsize=TICK_FS)

    fig.savefig(outpath, dpi=150, bbox_inches='tight')
    plt.close(fig)
    logger.debug('Saved track plot %s', outpath)
