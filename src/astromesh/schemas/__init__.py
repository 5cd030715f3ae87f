"""Pydantic configuration schemas for the astromesh pipeline.

Exports
-------
resolve_config : function
    Single entrypoint for configuration resolution
InternalConfig : class
    Fully validated, authoritative runtime configuration
ParamConfig : class
    Expert defaults (complete)
UserConfig : class
    User-facing configuration (forgiving, minimal)
CLIConfig : class
    Command-line operational overrides
"""

from astromesh.schemas.cli import CLIConfig
from astromesh.schemas.internal import InternalConfig
from astromesh.schemas.param import ParamConfig
from astromesh.schemas.resolve import deep_merge, resolve_config
from astromesh.schemas.user import UserConfig

__all__ = [
    'resolve_config',
    'deep_merge',
    'InternalConfig',
    'ParamConfig',
    'UserConfig',
    'CLIConfig',
]
