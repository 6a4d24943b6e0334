
import pytest

from slx_log import ChannelType, Frame


def _frame(channel=ChannelType.PRIMARY, frame_index=0, latitude=55.75, longitude=37.61,
           depth_m=5.0, sounded_data=b'\x01\x02\x03\x04', **kwargs):
    kwargs.setdefault('frequency', 0)
    return Frame(channel=ChannelType(channel), frame_index=frame_index, latitude=latitude,
                 longitude=longitude, depth_m=depth_m, sounded_data=sounded_data, **kwargs)


@pytest.fixture
def make_frame():
    """Factory for frames with sensible defaults."""
    return _frame


@pytest.fixture
def track():
    """Primary and DownScan frames along a short track, two channels per ping."""
    frames = []
    for i in range(5):
        lat = 55.75 + i * 0.0005
        lon = 37.61 + i * 0.0003
        for channel in (ChannelType.PRIMARY, ChannelType.DOWNSCAN):
            frames.append(_frame(channel, i, lat, lon, depth_m=3.0 + i,
                                 sounded_data=bytes([i, channel, 10, 20, 30]),
                                 upper_limit_m=0.0, lower_limit_m=12.0,
                                 time_offset_ms=i * 100))
    return frames
