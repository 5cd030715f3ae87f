"""Robust statistics on typed buffers."""

from astromesh.statistics.basic import (
    concentration,
    has_negative,
    is_sorted,
    mad,
    maximum,
    mean,
    mean_std,
    median,
    median_mad,
    minimum,
    no_blank_sorted,
    number,
    quantile,
    quantile_function,
    quantile_index,
    sort_decreasing,
    sort_increasing,
    std,
    std_from_sums,
    sum,
    unique,
)
from astromesh.statistics.clip import (
    CLIP_MAX_CONVERGE,
    CLIP_OPTIONAL_ALL,
    CLIP_OPTIONAL_MAD,
    CLIP_OPTIONAL_MEAN,
    CLIP_OPTIONAL_STD,
    ClipResult,
    mad_clip,
    sigma_clip,
)
from astromesh.statistics.histogram import bin_centers, cfp, histogram, regular_bins
from astromesh.statistics.mode import MODE_GOOD_SYM, MirrorPlots, ModeResult, mode, mode_mirror_plots
from astromesh.statistics.signal import clipped_mean_quantile, signal_in_tile

__all__ = [
    'concentration', 'has_negative', 'is_sorted', 'mad', 'maximum', 'mean',
    'mean_std', 'median', 'median_mad', 'minimum', 'no_blank_sorted', 'number',
    'quantile', 'quantile_function', 'quantile_index', 'sort_decreasing',
    'sort_increasing', 'std', 'std_from_sums', 'sum', 'unique',
    'CLIP_MAX_CONVERGE', 'CLIP_OPTIONAL_ALL', 'CLIP_OPTIONAL_MAD',
    'CLIP_OPTIONAL_MEAN', 'CLIP_OPTIONAL_STD', 'ClipResult', 'mad_clip', 'sigma_clip',
    'bin_centers', 'cfp', 'histogram', 'regular_bins',
    'MODE_GOOD_SYM', 'MirrorPlots', 'ModeResult', 'mode', 'mode_mirror_plots',
    'clipped_mean_quantile', 'signal_in_tile',
]
