"""Configuration resolution and merging logic.

This module provides the single entrypoint for configuration resolution:
resolve_config(). It merges ParamConfig, UserConfig and CLIConfig in the
correct precedence order and returns a validated InternalConfig.

Precedence (highest to lowest):
1. CLIConfig (command-line overrides)
2. UserConfig (user file)
3. ParamConfig (expert defaults)
"""

from typing import Optional, Union

from astromesh.errors import MisconfigurationError
from astromesh.schemas.cli import CLIConfig
from astromesh.schemas.internal import InternalConfig
from astromesh.schemas.param import ParamConfig
from astromesh.schemas.user import UserConfig


def deep_merge(base: dict, *overrides: dict) -> dict:
    """Deep merge multiple dictionaries.

    Later dictionaries override earlier ones. Nested dictionaries are
    merged recursively; other values are replaced.

    Examples
    --------
    >>> base = {"a": 1, "b": {"c": 2, "d": 3}}
    >>> override = {"b": {"d": 4, "e": 5}, "f": 6}
    >>> deep_merge(base, override)
    {'a': 1, 'b': {'c': 2, 'd': 4, 'e': 5}, 'f': 6}
    """
    result = base.copy()

    for override in overrides:
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = deep_merge(result[key], value)
            else:
                result[key] = value

    return result


def _check_cross_section(merged: dict) -> None:
    """Option combinations that individual sections cannot validate."""
    tile = merged["tile"]
    if len(tile["tile_size"]) != len(tile["num_channels"]):
        raise MisconfigurationError(
            f"tile_size {tuple(tile['tile_size'])} and num_channels "
            f"{tuple(tile['num_channels'])} must have one value per axis"
        )
    up_range = merged["catalog"].get("up_range")
    if up_range is not None and len(up_range) != len(tile["tile_size"]):
        raise MisconfigurationError("catalog.up_range needs one value per image axis")


def resolve_config(
    param_cfg: Union[dict, ParamConfig],
    user_cfg: Optional[Union[dict, UserConfig]] = None,
    cli_cfg: Optional[Union[dict, CLIConfig]] = None,
) -> InternalConfig:
    """Resolve final runtime configuration from param, user and CLI configs.

    Parameters
    ----------
    param_cfg : dict or ParamConfig
        Expert configuration with complete defaults. Required.
    user_cfg : dict or UserConfig, optional
        User configuration with overrides.
    cli_cfg : dict or CLIConfig, optional
        Command-line overrides.

    Returns
    -------
    InternalConfig
        Fully validated, immutable runtime configuration

    Raises
    ------
    ValidationError
        If any config fails Pydantic validation
    MisconfigurationError
        If merged options are inconsistent with each other

    Examples
    --------
    >>> param = ParamConfig()
    >>> user = UserConfig(QTHRESH=2, TILE_SIZE=32)
    >>> config = resolve_config(param, user)
    >>> config.detection.qthresh
    2.0
    >>> config.tile.tile_size
    (32, 32)
    """
    if not isinstance(param_cfg, ParamConfig):
        param = ParamConfig.model_validate(param_cfg)
    else:
        param = param_cfg

    if user_cfg is None or (isinstance(user_cfg, dict) and not user_cfg):
        user = UserConfig()
    elif not isinstance(user_cfg, UserConfig):
        user = UserConfig.model_validate(user_cfg)
    else:
        user = user_cfg

    if cli_cfg is None or (isinstance(cli_cfg, dict) and not cli_cfg):
        cli = CLIConfig()
    elif not isinstance(cli_cfg, CLIConfig):
        cli = CLIConfig.model_validate(cli_cfg)
    else:
        cli = cli_cfg

    # Deep merge: param < user < cli
    merged = deep_merge(param.model_dump(), user.to_internal_overrides(),
                        cli.to_internal_overrides())
    _check_cross_section(merged)

    return InternalConfig.model_validate(merged)
