"""Derived catalog columns (magnitudes, S/N and moment ellipses)."""

import numpy as np

__all__ = [
    'magnitude',
    'magnitude_error',
    'signal_to_noise',
    'ellipse_axes',
    'position_angle',
    'finalize',
]


def magnitude(flux, zeropoint: float = 0.0):
    """``-2.5 log10(flux) + zeropoint``; NaN for non-positive flux."""
    flux = np.asarray(flux, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        mag = np.where(flux > 0, -2.5 * np.log10(flux) + zeropoint, np.nan)
    return mag if mag.ndim else float(mag)


def magnitude_error(sn):
    sn = np.asarray(sn, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        err = np.where(sn > 0, 2.5 / np.log(10) / sn, np.nan)
    return err if err.ndim else float(err)


def signal_to_noise(flux, sum_var):
    flux = np.asarray(flux, dtype=np.float64)
    sum_var = np.asarray(sum_var, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        sn = np.where(sum_var > 0, flux / np.sqrt(sum_var), np.nan)
    return sn if sn.ndim else float(sn)


def ellipse_axes(xx, yy, xy):
    """Semi-major and semi-minor axes from central second moments."""
    xx, yy, xy = (np.asarray(v, dtype=np.float64) for v in (xx, yy, xy))
    mean = (xx + yy) / 2
    root = np.sqrt(((xx - yy) / 2) ** 2 + xy ** 2)
    with np.errstate(invalid="ignore"):
        major = np.sqrt(mean + root)
        minor = np.sqrt(np.clip(mean - root, 0, None))
    return major, minor


def position_angle(xx, yy, xy):
    """Angle of the major axis from the +x axis, in degrees within (-90, 90]."""
    xx, yy, xy = (np.asarray(v, dtype=np.float64) for v in (xx, yy, xy))
    return np.degrees(0.5 * np.arctan2(2 * xy, xx - yy))


def finalize(table, zeropoint: float, prefixes=("", "geo_")):
    """Add magnitude, S/N and ellipse columns to a raw measurement table."""
    if table.empty or "sum" not in table.columns:
        return table
    table["sn"] = signal_to_noise(table["sum"], table["sum_var"])
    table["sum_error"] = np.sqrt(table["sum_var"].to_numpy(dtype=np.float64))
    table["magnitude"] = magnitude(table["sum"].to_numpy(), zeropoint)
    table["magnitude_error"] = magnitude_error(table["sn"].to_numpy())
    for prefix in prefixes:
        if f"{prefix}xx" not in table.columns:
            continue
        xx, yy, xy = (table[f"{prefix}{c}"] for c in ("xx", "yy", "xy"))
        major, minor = ellipse_axes(xx, yy, xy)
        table[f"{prefix}semi_major"] = major
        table[f"{prefix}semi_minor"] = minor
        with np.errstate(divide="ignore", invalid="ignore"):
            table[f"{prefix}axis_ratio"] = np.where(major > 0, minor / major, np.nan)
        table[f"{prefix}position_angle"] = position_angle(xx, yy, xy)
    return table
